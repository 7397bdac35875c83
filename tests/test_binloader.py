import io
import struct

import lz4.block
import pytest

from memtuner.binloader import BinLoader, ChunkError, is_compressed_signature


def chunk(payload, order="<"):
    compressed = lz4.block.compress(payload, store_size=False)
    signature = b"FF##" if order == "<" else b"##FF"
    return signature + struct.pack(order + "I", len(compressed)) + compressed


def test_signature_detection():
    assert is_compressed_signature(b"FF##rest") is True
    assert is_compressed_signature(b"##FF") is True
    assert is_compressed_signature(b"\x00\x00\x00\x00") is False
    assert is_compressed_signature(b"FF") is False


def test_uncompressed_read_struct_and_eof():
    data = struct.pack("<HI", 513, 7)
    loader = BinLoader(io.BytesIO(data), False)
    assert loader.read_struct("<H") == (513,)
    assert loader.tell() == 2
    assert loader.eof() is False
    assert loader.read_struct("<I") == (7,)
    with pytest.raises(EOFError):
        loader.read(1)
    assert loader.eof() is True


def test_compressed_read_across_chunks():
    stream = io.BytesIO(chunk(b"hello") + chunk(b"world"))
    loader = BinLoader(stream, True)
    assert loader.read(3) == b"hel"
    assert loader.read(4) == b"lowo"
    assert loader.tell() == 7
    assert loader.eof() is False
    assert loader.read(3) == b"rld"
    assert loader.eof() is True
    with pytest.raises(EOFError):
        loader.read(1)


def test_exact_chunk_boundary_is_not_eof():
    loader = BinLoader(io.BytesIO(chunk(b"abcd") + chunk(b"ef")), True)
    assert loader.read(4) == b"abcd"
    assert loader.eof() is False
    assert loader.read(2) == b"ef"
    assert loader.eof() is True


def test_big_endian_chunk_header():
    payload = bytes(range(40))
    loader = BinLoader(io.BytesIO(chunk(payload, ">")), True)
    assert loader.read(40) == payload
    assert loader.eof() is True


def test_file_tell_follows_compressed_stream():
    data = chunk(b"x" * 100)
    loader = BinLoader(io.BytesIO(data), True)
    assert loader.file_tell() == len(data)
    loader.read(10)
    assert loader.tell() == 10


def test_missing_chunk_signature_means_eof():
    loader = BinLoader(io.BytesIO(b"not a chunk"), True)
    assert loader.eof() is True
    with pytest.raises(EOFError):
        loader.read(1)


def test_truncated_chunk_payload_means_eof():
    data = chunk(b"payload")[:-2]
    loader = BinLoader(io.BytesIO(data), True)
    assert loader.eof() is True


def test_empty_chunk_payload_is_corrupt():
    with pytest.raises(ChunkError):
        BinLoader(io.BytesIO(b"FF##" + struct.pack("<I", 0)), True)


def test_negative_read_rejected():
    loader = BinLoader(io.BytesIO(b"abc"), False)
    with pytest.raises(ValueError):
        loader.read(-1)
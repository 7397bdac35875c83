"""Reader for capture files, either plain or split into LZ4-compressed chunks."""

from __future__ import annotations

import struct
from typing import BinaryIO, Optional

import lz4.block

CHUNK_SIGNATURE = 0x23234646
_SIG_LITTLE = struct.pack("<I", CHUNK_SIGNATURE)
_SIG_BIG = struct.pack(">I", CHUNK_SIGNATURE)

_INITIAL_BUFFER = 64 * 1024
_MAX_BUFFER = 1 << 28


class ChunkError(ValueError):
    """A compressed chunk could not be decompressed."""


def is_compressed_signature(data: bytes) -> bool:
    """Return True if the first four bytes mark a compressed chunk, in either byte order."""
    return data[:4] in (_SIG_LITTLE, _SIG_BIG)


class BinLoader:
    """Sequential reader over a capture stream.

    In compressed mode the stream is a sequence of chunks, each made of a
    signature, a 32-bit payload size and an LZ4 block; reads run seamlessly
    across chunk boundaries.
    """

    def __init__(self, stream: BinaryIO, compressed: bool) -> None:
        self._stream = stream
        self._compressed = compressed
        self._data = b""
        self._pos = 0
        self._bytes_read = 0
        self._out_size = _INITIAL_BUFFER
        self._at_eof = False
        if compressed:
            self._next_chunk()

    def eof(self) -> bool:
        """Return True once no more data can be read."""
        if self._compressed:
            return self._pos == len(self._data)
        return self._at_eof

    def tell(self) -> int:
        """Return the position in the (decompressed) data."""
        if self._compressed:
            return self._bytes_read + self._pos
        return self.file_tell()

    def file_tell(self) -> int:
        """Return the position in the underlying stream."""
        return self._stream.tell()

    def read(self, size: int) -> bytes:
        """Read exactly size bytes; raise EOFError if the data runs out."""
        if size < 0:
            raise ValueError("size must not be negative")
        if not self._compressed:
            data = self._stream.read(size)
            if len(data) < size:
                self._at_eof = True
                raise EOFError(f"wanted {size} bytes, got {len(data)}")
            return data

        parts = []
        needed = size
        while needed:
            available = len(self._data) - self._pos
            if available == 0:
                raise EOFError(f"wanted {size} bytes, got {size - needed}")
            take = min(needed, available)
            parts.append(self._data[self._pos:self._pos + take])
            self._pos += take
            needed -= take
            if self._pos == len(self._data):
                self._next_chunk()
        return b"".join(parts)

    def read_struct(self, fmt: str) -> tuple:
        """Read and unpack one struct; fmt should carry its byte order prefix."""
        return struct.unpack(fmt, self.read(struct.calcsize(fmt)))

    def _next_chunk(self) -> None:
        while self._pos == len(self._data):
            self._bytes_read += len(self._data)
            self._data = b""
            self._pos = 0
            chunk = self._load_chunk()
            if chunk is None:
                return
            self._data = chunk

    def _load_chunk(self) -> Optional[bytes]:
        signature = self._stream.read(4)
        if signature == _SIG_LITTLE:
            order = "<"
        elif signature == _SIG_BIG:
            order = ">"
        else:
            return None
        raw_size = self._stream.read(4)
        if len(raw_size) != 4:
            return None
        (size,) = struct.unpack(order + "I", raw_size)
        payload = self._stream.read(size)
        if len(payload) != size:
            return None
        return self._decompress(payload)

    def _decompress(self, payload: bytes) -> bytes:
        if not payload:
            raise ChunkError("empty compressed chunk")
        while True:
            try:
                return lz4.block.decompress(payload, uncompressed_size=self._out_size)
            except lz4.block.LZ4BlockError as exc:
                if self._out_size >= _MAX_BUFFER:
                    raise ChunkError("cannot decompress chunk") from exc
                self._out_size *= 2
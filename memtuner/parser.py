"""Parsing of a capture stream into operations, stack traces, tags, markers and modules."""

from __future__ import annotations

import hashlib
import logging
import struct
from collections import defaultdict
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Optional

from memtuner.binloader import BinLoader, ChunkError, is_compressed_signature
from memtuner.model import (
    NOT_UNLOADED,
    EntryTag,
    LogMarker,
    MarkerEvent,
    MarkerTime,
    MemoryOperation,
    MemoryTagTree,
    ModuleInfo,
    OpType,
    StackTrace,
    ToolChain,
)
from memtuner.statsops import is_alloc

log = logging.getLogger(__name__)

MAX_STRING = 1024
MAX_FRAMES = 512
MODULE_PATH_XOR = 0x23
TAIL_TOLERANCE = 1000
NO_MARKER_TIME = 0xFFFFFFFFFFFFFFFF
_PROGRESS_SHIFT = 16

ProgressCallback = Callable[[float, str], None]


class LoadError(Exception):
    """The capture stream could not be loaded."""


class _BadRecord(Exception):
    pass


@dataclass(frozen=True)
class CaptureHeader:
    """Fixed header at the start of a capture."""

    swap_endian: bool = False
    is_64bit: bool = True
    version_high: int = 1
    version_low: int = 2
    toolchain: int = ToolChain.WIN_MSVC
    cpu_frequency: int = 0

    @property
    def byte_order(self) -> str:
        return ">" if self.swap_endian else "<"


def _file_name(path: str) -> str:
    return path.replace("\\", "/").rsplit("/", 1)[-1]


@dataclass
class ParseResult:
    """Everything read from a capture stream, in file order."""

    header: CaptureHeader
    operations: list[MemoryOperation] = field(default_factory=list)
    stack_traces: list[StackTrace] = field(default_factory=list)
    modules: list[ModuleInfo] = field(default_factory=list)
    tag_tree: MemoryTagTree = field(default_factory=MemoryTagTree)
    heaps: dict[int, str] = field(default_factory=dict)
    markers: dict[int, MarkerEvent] = field(default_factory=dict)
    marker_times: list[MarkerTime] = field(default_factory=list)
    min_marker_time: int = NO_MARKER_TIME
    partial: bool = False

    def add_module(self, path: str, base: int, size: int, timestamp: int) -> None:
        """Register a module; a known file name only updates its address range."""
        if "/" not in path and "\\" not in path:
            return
        name = _file_name(path)
        for info in self.modules:
            if _file_name(info.path) == name:
                info.base_address = base
                info.size = size
                return
        self.modules.append(
            ModuleInfo(
                path=path[: MAX_STRING - 1],
                base_address=base,
                size=size,
                load_time=timestamp,
                unload_time=NOT_UNLOADED,
                toolchain=self.header.toolchain,
            )
        )

    def remove_module(self, path: str, base: int, size: int, timestamp: int) -> None:
        """Mark the matching loaded module as unloaded at timestamp."""
        for info in self.modules:
            if info.path != path:
                continue
            if timestamp < info.load_time or info.unload_time != NOT_UNLOADED:
                continue
            if info.base_address != base or info.size != size:
                continue
            info.unload_time = timestamp
            return


def _stack_trace_hash(frames: list[int]) -> int:
    packed = struct.pack(f"<{len(frames)}Q", *frames)
    return int.from_bytes(hashlib.blake2b(packed, digest_size=4).digest(), "little")


def _toolchain(value: int) -> int:
    try:
        return ToolChain(value)
    except ValueError:
        return value


class _Parser:
    def __init__(
        self,
        loader: BinLoader,
        result: ParseResult,
        file_size: int,
        progress: Optional[ProgressCallback],
    ) -> None:
        self._loader = loader
        self._result = result
        self._file_size = file_size
        self._progress = progress
        self._order = result.header.byte_order
        self._tag_stacks: defaultdict[int, list[int]] = defaultdict(list)
        self._traces: dict[int, StackTrace] = {}

    def _unpack(self, fmt: str) -> int:
        return self._loader.read_struct(self._order + fmt)[0]

    def _u8(self) -> int:
        return self._unpack("B")

    def _u16(self) -> int:
        return self._unpack("H")

    def _u32(self) -> int:
        return self._unpack("I")

    def _u64(self) -> int:
        return self._unpack("Q")

    def _ptr(self) -> int:
        return self._u64() if self._result.header.is_64bit else self._u32()

    def _string(self, wide: bool = False, xor: int = 0) -> tuple[str, int]:
        length = self._u32()
        if length >= MAX_STRING:
            return "", 4
        width = 2 if wide else 1
        raw = bytes(b ^ xor for b in self._loader.read(length * width))
        text = raw.decode("utf-16-le" if wide else "utf-8", errors="replace")
        return text.split("\0", 1)[0], length * width + 4

    def _report(self, percent: float, message: str) -> None:
        if self._progress is not None:
            self._progress(percent, message)

    def read_modules(self) -> bool:
        remaining = self._u32()
        if remaining == 0:
            return True
        wide = self._u8() == 2
        remaining -= 1
        while remaining > 0:
            path, consumed = self._string(wide=wide, xor=MODULE_PATH_XOR)
            if consumed == 4:
                break
            base = self._u64()
            size = self._u64()
            consumed += 16
            self._result.add_module(path, base, size, 0)
            if self._file_size:
                percent = self._loader.tell() * 100.0 / self._file_size
                self._report(percent, "Loading module information " + path)
            remaining -= consumed
        return remaining == 0

    def run(self) -> bool:
        handlers = {
            LogMarker.REGISTER_TAG: self._register_tag,
            LogMarker.ENTER_TAG: self._enter_tag,
            LogMarker.LEAVE_TAG: self._leave_tag,
            LogMarker.REGISTER_MARKER: self._register_marker,
            LogMarker.MARKER: self._marker,
            LogMarker.MODULE: self._module,
            LogMarker.MODULE_UNLOAD: self._module_unload,
            LogMarker.ALLOCATOR: self._allocator,
        }
        over100 = self._file_size // 100
        entries = 0
        file_progress = 1
        try:
            while not self._loader.eof():
                entries += 1
                try:
                    marker = self._u8()
                except EOFError:
                    break
                if entries >> _PROGRESS_SHIFT != file_progress:
                    file_progress = entries >> _PROGRESS_SHIFT
                    position = self._loader.file_tell()
                    percent = position / over100 if over100 else 100.0
                    self._report(percent, "Loading capture file...")
                if marker <= OpType.REALLOC_ALIGNED:
                    self._operation(OpType(marker))
                else:
                    handler = handlers.get(marker)
                    if handler is None:
                        return False
                    handler()
        except (EOFError, ChunkError, _BadRecord):
            return False
        return True

    def _operation(self, op_type: OpType) -> None:
        op = MemoryOperation(operation_type=op_type)
        op.allocator_handle = self._u64()
        op.thread_id = self._u64()
        op.pointer = self._ptr()
        if op_type in (OpType.REALLOC, OpType.REALLOC_ALIGNED):
            op.previous_pointer = self._ptr()
        op.operation_time = self._u64()
        if op_type != OpType.FREE:
            if op_type in (OpType.ALLOC_ALIGNED, OpType.REALLOC_ALIGNED):
                op.alignment = self._u8()
            op.alloc_size = self._u32()
            op.overhead = self._u32()

        op.stack_trace = self._stack_trace()

        if is_alloc(op_type):
            stack = self._tag_stacks[op.thread_id]
            op.tag = stack[-1] if stack else 0

        self._result.operations.append(op)
        self._result.heaps.setdefault(op.allocator_handle, f"0x{op.allocator_handle:x}")

    def _stack_trace(self) -> StackTrace:
        entry = self._u8()
        if entry == EntryTag.EXISTS:
            trace = self._traces.get(self._u32())
            if trace is None:
                raise _BadRecord("reference to unknown stack trace")
            return trace
        if entry != EntryTag.ADD:
            raise _BadRecord(f"bad stack trace tag {entry}")

        count = self._u16()
        if count > MAX_FRAMES:
            raise _BadRecord(f"too many frames: {count}")
        frames = [self._ptr() for _ in range(count)]
        key = _stack_trace_hash(frames)
        trace = self._traces.get(key)
        if trace is None or trace.frames != frames:
            trace = StackTrace(frames=frames)
            self._traces[key] = trace
            self._result.stack_traces.append(trace)
        return trace

    def _register_tag(self) -> None:
        name, _ = self._string()
        parent_name, _ = self._string()
        tag_hash = self._u32()
        parent_hash = self._u32() if parent_name else 0
        self._result.tag_tree.insert(MemoryTagTree(name=name, hash=tag_hash), parent_hash)

    def _enter_tag(self) -> None:
        tag_hash = self._u32()
        thread_id = self._u64()
        self._tag_stacks[thread_id].append(tag_hash)

    def _leave_tag(self) -> None:
        self._u32()
        stack = self._tag_stacks[self._u64()]
        if stack:
            stack.pop()

    def _register_marker(self) -> None:
        name, _ = self._string()
        name_hash = self._u32()
        color = self._u32()
        self._result.markers[name_hash] = MarkerEvent(name, name_hash, color)

    def _marker(self) -> None:
        name_hash = self._u32()
        thread_id = self._u64()
        time = self._u64()
        self._result.min_marker_time = min(self._result.min_marker_time, time)
        self._result.marker_times.append(MarkerTime(thread_id, time, name_hash))

    def _module_record(self) -> tuple[str, int, int, int]:
        narrow = self._u8() == 1
        name, _ = self._string(wide=not narrow)
        base = self._u64()
        size = self._u32()
        # The timestamp of module records is stored without byte swapping.
        (time,) = self._loader.read_struct("<Q")
        return name, base, size, time

    def _module(self) -> None:
        self._result.add_module(*self._module_record())

    def _module_unload(self) -> None:
        self._result.remove_module(*self._module_record())

    def _allocator(self) -> None:
        name, _ = self._string()
        handle = self._u64()
        self._result.heaps[handle] = name


def _read_header(loader: BinLoader) -> CaptureHeader:
    endianness, pointer_size, ver_high, ver_low, toolchain = loader.read_struct("<BBBBB")
    swap = endianness == 0xFF
    (frequency,) = loader.read_struct((">" if swap else "<") + "Q")
    return CaptureHeader(
        swap_endian=swap,
        is_64bit=pointer_size == 64,
        version_high=ver_high,
        version_low=ver_low,
        toolchain=_toolchain(toolchain),
        cpu_frequency=frequency,
    )


def parse_stream(
    stream: BinaryIO, file_size: int, progress: Optional[ProgressCallback] = None
) -> ParseResult:
    """Parse a capture stream; raise LoadError if it cannot be used.

    Invalid data near the end of the stream, or after at least one operation
    was read, yields a result flagged as partial.
    """
    start = stream.tell()
    signature = stream.read(4)
    if not signature:
        raise LoadError("empty capture")
    stream.seek(start)

    try:
        loader = BinLoader(stream, is_compressed_signature(signature))
        header = _read_header(loader)
    except (EOFError, ChunkError) as exc:
        raise LoadError("truncated capture header") from exc

    if header.version_high > 1 or header.version_low > 2:
        raise LoadError(f"unsupported version {header.version_high}.{header.version_low}")

    log.debug(
        "capture version %d.%d, %s endian, %s bit",
        header.version_high,
        header.version_low,
        "big" if header.swap_endian else "little",
        64 if header.is_64bit else 32,
    )

    result = ParseResult(header)
    parser = _Parser(loader, result, file_size, progress)

    try:
        modules_ok = parser.read_modules()
    except (EOFError, ChunkError) as exc:
        raise LoadError("truncated module information") from exc
    if not modules_ok:
        raise LoadError("invalid module information")

    if not parser.run():
        remaining = file_size - loader.file_tell()
        if remaining < TAIL_TOLERANCE or result.operations:
            result.partial = True
        else:
            if progress is not None:
                progress(100.0, "Error reading .MTuner file!")
            raise LoadError("invalid data in capture")

    return result
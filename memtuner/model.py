"""Core data model of a memory capture: operations, stats, trees and modules."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import ClassVar, Optional

NUM_HISTOGRAM_BINS = 23
DEFAULT_ALIGNMENT = 255
NOT_UNLOADED = 0xFFFFFFFFFFFFFFFF


class OpType(enum.IntEnum):
    """Kinds of memory operation recorded in a capture."""

    ALLOC = 0
    ALLOC_ALIGNED = 1
    CALLOC = 2
    FREE = 3
    REALLOC = 4
    REALLOC_ALIGNED = 5


OP_COUNT = len(OpType)


class LogMarker(enum.IntEnum):
    """Record markers found in the capture stream."""

    OP_ALLOC = 0
    OP_ALLOC_ALIGNED = 1
    OP_CALLOC = 2
    OP_FREE = 3
    OP_REALLOC = 4
    OP_REALLOC_ALIGNED = 5
    REGISTER_TAG = 6
    ENTER_TAG = 7
    LEAVE_TAG = 8
    REGISTER_MARKER = 9
    MARKER = 10
    MODULE = 11
    MODULE_UNLOAD = 12
    ALLOCATOR = 13


class EntryTag(enum.IntEnum):
    """Whether a stack trace record carries new frames or refers to known ones."""

    ADD = 0
    EXISTS = 1


class ToolChain(enum.IntEnum):
    """Toolchain that built the captured program."""

    WIN_MSVC = 0
    WIN_GCC = 1
    LINUX_GCC = 2
    OSX_GCC = 3
    PS3_GCC = 4
    PS3_SNC = 5
    PS4_CLANG = 6
    PS5_CLANG = 7
    ANDROID_ARM = 8
    ANDROID_MIPS = 9
    ANDROID_X86 = 10


class GroupSort(enum.IntEnum):
    """Orderings for operation groups."""

    COUNT = 0
    SIZE = 1
    TOTAL_SIZE = 2


@dataclass
class ModuleInfo:
    """A module (executable or shared library) loaded by the captured process."""

    path: str
    base_address: int = 0
    size: int = 0
    load_time: int = 0
    unload_time: int = NOT_UNLOADED
    toolchain: ToolChain = ToolChain.WIN_MSVC

    def check_address(self, address: int) -> bool:
        """Return True if the address lies inside this module."""
        return self.base_address <= address < self.base_address + self.size


@dataclass(eq=False)
class StackTrace:
    """A call stack shared by the operations that were made from it."""

    frames: list[int]
    address_ids: list[int] = field(default_factory=list)
    child_index: list[list[int]] = field(default_factory=lambda: [[], []])
    added_to_tree: list[int] = field(default_factory=lambda: [0, 0])

    @property
    def num_frames(self) -> int:
        return len(self.frames)


@dataclass(eq=False)
class MemoryOperation:
    """A single alloc, realloc or free recorded in the capture."""

    operation_type: int
    allocator_handle: int = 0
    thread_id: int = 0
    pointer: int = 0
    previous_pointer: int = 0
    operation_time: int = 0
    alloc_size: int = 0
    overhead: int = 0
    tag: int = 0
    alignment: int = DEFAULT_ALIGNMENT
    is_valid: bool = True
    stack_trace: Optional[StackTrace] = field(default=None, repr=False)
    chain_prev: Optional[MemoryOperation] = field(default=None, repr=False)
    chain_next: Optional[MemoryOperation] = field(default=None, repr=False)


@dataclass
class HistogramBin:
    """Usage of one allocation size range."""

    size: int = 0
    size_peak: int = 0
    overhead: int = 0
    overhead_peak: int = 0
    count: int = 0
    count_peak: int = 0


@dataclass
class HistogramBinPeak:
    """Peak values of one histogram bin within a time range."""

    size_peak: int = 0
    overhead_peak: int = 0
    count_peak: int = 0


def _peak_bins() -> list[HistogramBinPeak]:
    return [HistogramBinPeak() for _ in range(NUM_HISTOGRAM_BINS)]


def _bins() -> list[HistogramBin]:
    return [HistogramBin() for _ in range(NUM_HISTOGRAM_BINS)]


@dataclass
class LocalPeak:
    """Peak values reached within one time range."""

    memory_usage_peak: int = 0
    overhead_peak: int = 0
    live_blocks_peak: int = 0
    histogram: list[HistogramBinPeak] = field(default_factory=_peak_bins)


@dataclass
class MemoryStats:
    """Memory statistics for a time range."""

    MIN_HISTOGRAM_SIZE: ClassVar[int] = 8
    HISTOGRAM_BIN_SHIFT: ClassVar[int] = 3
    NUM_HISTOGRAM_BINS: ClassVar[int] = NUM_HISTOGRAM_BINS

    memory_usage: int = 0
    memory_usage_peak: int = 0
    overhead: int = 0
    overhead_peak: int = 0
    number_of_operations: int = 0
    number_of_allocations: int = 0
    number_of_reallocations: int = 0
    number_of_frees: int = 0
    number_of_live_blocks: int = 0
    number_of_live_blocks_peak: int = 0
    histogram: list[HistogramBin] = field(default_factory=_bins)

    def set_peaks_to_current(self) -> None:
        """Make every peak value equal to the current value."""
        self.memory_usage_peak = self.memory_usage
        self.overhead_peak = self.overhead
        for b in self.histogram:
            b.size_peak = b.size
            b.overhead_peak = b.overhead
            b.count_peak = b.count

    def set_peaks_from(self, peaks: LocalPeak) -> None:
        """Take the peak values from a local peak record."""
        self.memory_usage_peak = peaks.memory_usage_peak
        self.overhead_peak = peaks.overhead_peak
        for b, p in zip(self.histogram, peaks.histogram):
            b.size_peak = p.size_peak
            b.overhead_peak = p.overhead_peak
            b.count_peak = p.count_peak

    def copy(self) -> MemoryStats:
        """Return an independent copy."""
        return replace(self, histogram=[replace(b) for b in self.histogram])


@dataclass
class TimedStats:
    """Stats checkpoint taken at a given operation."""

    time: int
    operation_index: int
    local_peak: LocalPeak
    stats: MemoryStats


def _zero_bins() -> list[int]:
    return [0] * NUM_HISTOGRAM_BINS


@dataclass(eq=False)
class MemoryOperationGroup:
    """Operations sharing one call stack."""

    min_size: int = 0xFFFFFFFF
    max_size: int = 0
    peak_size: int = 0
    peak_size_global: int = 0
    live_size: int = 0
    count: int = 0
    live_count: int = 0
    live_count_peak: int = 0
    live_count_peak_global: int = 0
    operations: list[MemoryOperation] = field(default_factory=list, repr=False)
    histogram: list[int] = field(default_factory=_zero_bins)
    histogram_peak: list[int] = field(default_factory=_zero_bins)


@dataclass(eq=False)
class StackTraceTree:
    """Node of the call tree built from all stack traces."""

    ALLOC: ClassVar[int] = 0
    FREE: ClassVar[int] = 1
    REALLOC: ClassVar[int] = 2
    COUNT: ClassVar[int] = 3

    address_id: int = 0
    mem_usage: int = 0
    mem_usage_peak: int = 0
    min_time: int = 0
    max_time: int = 0
    overhead: int = 0
    overhead_peak: int = 0
    depth: int = 0
    op_count: list[int] = field(default_factory=lambda: [0, 0, 0])
    parent: Optional[StackTraceTree] = field(default=None, repr=False)
    stack_traces: list[StackTrace] = field(default_factory=list, repr=False)
    children: list[StackTraceTree] = field(default_factory=list)

    def clear(self) -> None:
        """Drop all children and reset the usage values of this node."""
        for child in self.children:
            child.clear()
        self.children.clear()
        self.stack_traces.clear()
        self.mem_usage = 0
        self.mem_usage_peak = 0
        self.overhead = 0
        self.overhead_peak = 0
        self.parent = None


@dataclass(eq=False)
class MemoryTagTree:
    """Node of the tree of memory tags registered by the captured program."""

    name: str = ""
    hash: int = 0
    usage: int = 0
    usage_peak: int = 0
    overhead: int = 0
    overhead_peak: int = 0
    operation_count: list[int] = field(default_factory=lambda: [0] * OP_COUNT)
    parent: Optional[MemoryTagTree] = field(default=None, repr=False)
    children: dict[int, MemoryTagTree] = field(default_factory=dict)
    operations: list[MemoryOperation] = field(default_factory=list, repr=False)

    def find(self, tag_hash: int) -> Optional[MemoryTagTree]:
        """Return the node with the given hash, searching depth first."""
        if self.hash == tag_hash:
            return self
        for child in self.children.values():
            found = child.find(tag_hash)
            if found is not None:
                return found
        return None

    def insert(self, tag: MemoryTagTree, parent_hash: int) -> bool:
        """Attach a tag below the node with parent_hash; False if there is none."""
        if self.hash == parent_hash:
            tag.parent = self
            self.children[tag.hash] = tag
            return True
        return any(child.insert(tag, parent_hash) for child in self.children.values())

    def add_operation(self, op: MemoryOperation) -> None:
        """Account an operation to its tag and all of the tag's ancestors."""
        tag = self._locate(op.tag)
        size, overhead = op.alloc_size, op.overhead

        if op.operation_type == OpType.FREE:
            size, overhead = -size, -overhead
        elif op.operation_type in (OpType.REALLOC, OpType.REALLOC_ALIGNED):
            prev = op.chain_prev
            if prev is not None:
                self._locate(prev.tag)._account(
                    -prev.alloc_size, -prev.overhead, prev.operation_type
                )

        tag._account(size, overhead, op.operation_type)

    def clear(self) -> None:
        """Remove all descendants."""
        for child in self.children.values():
            child.clear()
        self.children.clear()

    def _locate(self, tag_hash: int) -> MemoryTagTree:
        # An unknown tag ends the search on the last node visited in pre-order.
        found = self.find(tag_hash)
        if found is not None:
            return found
        node = self
        while node.children:
            node = next(reversed(node.children.values()))
        return node

    def _account(self, size: int, overhead: int, op_type: int) -> None:
        node: Optional[MemoryTagTree] = self
        while node is not None:
            node.usage += size
            node.usage_peak = max(node.usage_peak, node.usage)
            node.overhead += overhead
            node.overhead_peak = max(node.overhead_peak, node.overhead)
            node.operation_count[op_type] += 1
            node = node.parent


@dataclass
class MarkerEvent:
    """A named, coloured marker registered by the captured program."""

    name: str
    name_hash: int
    color: int


@dataclass
class MarkerTime:
    """One occurrence of a marker."""

    thread_id: int
    time: int
    event_hash: int
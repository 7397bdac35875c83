"""A loaded memory capture: operations, statistics, filtering and analysis data."""

from __future__ import annotations

import enum
import os
from typing import Callable, Optional

from memtuner.analysis import (
    ALL_HEAPS,
    NO_HISTOGRAM_BIN,
    AddressResolver,
    FilterDescription,
    GroupMap,
    TraceScope,
    add_to_memory_groups,
    add_to_stack_tree,
    assign_address_ids,
)
from memtuner.model import (
    MarkerEvent,
    MarkerTime,
    MemoryOperation,
    MemoryStats,
    MemoryTagTree,
    ModuleInfo,
    OpType,
    StackTrace,
    StackTraceTree,
    TimedStats,
    ToolChain,
)
from memtuner.parser import LoadError, parse_stream
from memtuner.statsops import is_leaked
from memtuner.timeline import Timeline, link_operations, verify_stats

ProgressCallback = Callable[[float, str], None]

_ALLOC_TYPES = (OpType.ALLOC, OpType.CALLOC, OpType.ALLOC_ALIGNED)
_REALLOC_TYPES = (OpType.REALLOC, OpType.REALLOC_ALIGNED)


class LoadResult(enum.Enum):
    """Outcome of a successful load."""

    SUCCESS = "success"
    PARTIAL = "partial"


def _update_live(op: MemoryOperation, blocks: int, size: int) -> tuple[int, int]:
    op_type = op.operation_type
    prev = op.chain_prev
    if op_type in _ALLOC_TYPES:
        return blocks + 1, size + op.alloc_size
    if op_type in _REALLOC_TYPES:
        if op.previous_pointer == 0:
            blocks += 1
        size += op.alloc_size
        if op.previous_pointer and prev is not None:
            size -= prev.alloc_size
        return blocks, size
    if op_type == OpType.FREE:
        blocks -= 1
        if prev is not None:
            size -= prev.alloc_size
    return blocks, size


class Capture:
    """Memory capture loaded from a file, with global and filtered views."""

    def __init__(self) -> None:
        self._progress: Optional[ProgressCallback] = None
        self.clear()

    def set_load_progress_callback(self, callback: Optional[ProgressCallback]) -> None:
        """Set the function called with (percent, message) while working."""
        self._progress = callback

    def _report(self, percent: float, message: str) -> None:
        if self._progress is not None:
            self._progress(percent, message)

    def clear(self) -> None:
        """Drop all previously loaded data."""
        self.filtering_enabled = False
        self.swap_endian = False
        self.is_64bit = False
        self.toolchain: int = ToolChain.WIN_MSVC
        self.cpu_frequency = 0
        self.loaded_file = ""
        self.operations: list[MemoryOperation] = []
        self.operations_invalid: list[MemoryOperation] = []
        self.stats_snapshot = MemoryStats()
        self.modules: list[ModuleInfo] = []
        self.stack_traces: list[StackTrace] = []
        self.operation_groups: GroupMap = {}
        self.stack_trace_tree = StackTraceTree()
        self.tag_tree = MemoryTagTree()
        self.heaps: dict[int, str] = {}
        self.current_heap = ALL_HEAPS
        self.current_module: Optional[ModuleInfo] = None
        self.marker_times: list[MarkerTime] = []
        self.markers: dict[int, MarkerEvent] = {}
        self.memory_leaks: list[MemoryOperation] = []
        self.min_time = 0
        self.max_time = 0
        self.filter = FilterDescription()
        self._timeline: Optional[Timeline] = None

    @property
    def stats_global(self) -> MemoryStats:
        """Statistics over the whole capture."""
        return self._timeline.stats if self._timeline is not None else MemoryStats()

    @property
    def timed_stats(self) -> list[TimedStats]:
        """Stats checkpoints along the capture."""
        return self._timeline.timed_stats if self._timeline is not None else []

    @property
    def usage_graph(self) -> list[tuple[int, int]]:
        """Memory usage and live block count after every operation."""
        return self._timeline.graph if self._timeline is not None else []

    def load_bin(self, path: str) -> LoadResult:
        """Load a capture file; raise LoadError if it cannot be used."""
        self.clear()
        self.loaded_file = str(path)

        try:
            with open(path, "rb") as stream:
                file_size = os.fstat(stream.fileno()).st_size
                result = parse_stream(stream, file_size, self._progress)
        except OSError as exc:
            self.clear()
            raise LoadError(f"cannot read {path}") from exc
        except LoadError:
            self.clear()
            raise

        header = result.header
        self.swap_endian = header.swap_endian
        self.is_64bit = header.is_64bit
        self.toolchain = header.toolchain
        self.cpu_frequency = header.cpu_frequency
        self.modules = result.modules
        self.stack_traces = result.stack_traces
        self.tag_tree = result.tag_tree
        self.heaps = result.heaps
        self.markers = result.markers
        self.marker_times = result.marker_times

        self._report(100.0, "Sorting...")
        try:
            valid, invalid, min_time, max_time = link_operations(
                result.operations, result.min_marker_time
            )
        except ValueError as exc:
            self._report(100.0, "Invalid data in .MTuner file!")
            self.clear()
            raise LoadError("capture holds no valid operations") from exc
        self._report(100.0, "Removing invalid operations..")

        self.operations = valid
        self.operations_invalid = invalid
        self.min_time = min_time
        self.max_time = max_time
        self.filter.min_time_snapshot = min_time
        self.filter.max_time_snapshot = max_time

        self._report(100.0, "Calculating global stats..")
        self._report(100.0, "Calculating stats...")
        self._timeline = Timeline(valid)
        self.stats_snapshot = self._timeline.stats.copy()
        self._report(100.0, "Loading complete!")

        if not verify_stats(self._timeline.stats):
            self._report(100.0, "Invalid data in .MTuner file!")
            self.clear()
            raise LoadError("invalid statistics in capture")

        return LoadResult.PARTIAL if result.partial else LoadResult.SUCCESS

    def build_analyze_data(self, resolver: AddressResolver) -> None:
        """Resolve frame IDs, then build groups, the call tree, the tag tree and leaks."""
        if resolver is None:
            raise ValueError("a symbol resolver is required")

        self._report(0.0, "Generating unique symbol IDs...")
        assign_address_ids(self.stack_traces, resolver)

        live_blocks = 0
        live_size = 0
        total = len(self.operations)
        step = max(total // 100, 1)
        for i, op in enumerate(self.operations):
            if i and i % step == 0:
                self._report(i * 100.0 / total, "Building analysis data...")

            if op.chain_next is not None:
                if op.chain_next.tag == 0:
                    op.chain_next.tag = op.tag
            elif is_leaked(op):
                self.memory_leaks.append(op)

            live_blocks, live_size = _update_live(op, live_blocks, live_size)
            add_to_memory_groups(
                self.operation_groups, op, live_blocks, live_size, self.is_in_filter
            )
            add_to_stack_tree(self.stack_trace_tree, op, TraceScope.GLOBAL, self.is_in_filter)
            self.tag_tree.add_operation(op)
            self.heaps.setdefault(op.allocator_handle, "")

        self._report(100.0, "Done!")

    def set_filtering_enabled(self, state: bool) -> None:
        """Turn filtering on or off; turning it on rebuilds the filtered data."""
        self.filtering_enabled = state
        if state:
            self._calculate_filtered_data()

    def is_in_filter(self, op: MemoryOperation) -> bool:
        """Return True if the operation passes the current filter."""
        if not op.is_valid:
            return False
        if not self.filtering_enabled:
            return True
        return self.filter.matches(op, self.current_heap, self.current_module)

    def select_histogram_bin(self, index: int) -> None:
        """Filter on one histogram bin."""
        if index != self.filter.histogram_index:
            self.filter.histogram_index = index
            self._calculate_snapshot_stats()

    def deselect_histogram_bin(self) -> None:
        """Remove the histogram bin filter."""
        if self.filter.histogram_index != NO_HISTOGRAM_BIN:
            self.filter.histogram_index = NO_HISTOGRAM_BIN
            self._calculate_snapshot_stats()

    def select_tag(self, tag_hash: int) -> None:
        """Filter on one memory tag."""
        if tag_hash != self.filter.tag_hash:
            self.filter.tag_hash = tag_hash
            self._calculate_snapshot_stats()

    def deselect_tag(self) -> None:
        """Remove the tag filter."""
        if self.filter.tag_hash != 0xFFFFFFFF:
            self.filter.tag_hash = 0xFFFFFFFF
            self._calculate_snapshot_stats()

    def select_thread(self, thread_id: int) -> None:
        """Filter on one thread."""
        if thread_id != self.filter.thread_id:
            self.filter.thread_id = thread_id
            self._calculate_snapshot_stats()

    def deselect_thread(self) -> None:
        """Remove the thread filter."""
        if self.filter.thread_id != 0:
            self.filter.thread_id = 0
            self._calculate_snapshot_stats()

    def set_leaked_only(self, leaked: bool) -> None:
        """Restrict the filter to operations that leave a block allocated."""
        self.filter.leaked_only = leaked

    def set_snapshot(self, min_time: int, max_time: int) -> None:
        """Select a time range; ranges outside the capture are ignored."""
        if min_time < self.min_time or max_time > self.max_time:
            return
        if (self.filter.min_time_snapshot, self.filter.max_time_snapshot) != (
            min_time,
            max_time,
        ):
            self.filter.min_time_snapshot = min_time
            self.filter.max_time_snapshot = max_time
            self._calculate_snapshot_stats()

    def graph_at_time(self, time: int) -> tuple[int, int]:
        """Return (memory usage, live blocks) at the given time."""
        if self._timeline is None:
            raise ValueError("no capture loaded")
        return self._timeline.graph_at(time)

    def float_time(self, time: int) -> float:
        """Convert clock ticks to seconds."""
        return time / self.cpu_frequency

    def clocks_from_time(self, seconds: float) -> int:
        """Convert seconds to clock ticks."""
        return int(seconds * self.cpu_frequency)

    def marker_color(self, name_hash: int) -> int:
        """Return the colour of a registered marker, 0 if unknown."""
        marker = self.markers.get(name_hash)
        return marker.color if marker is not None else 0

    def marker_name(self, name_hash: int) -> str:
        """Return the name of a registered marker, empty if unknown."""
        marker = self.markers.get(name_hash)
        return marker.name if marker is not None else ""

    def _calculate_snapshot_stats(self) -> None:
        if self._timeline is None:
            return
        self.stats_snapshot = self._timeline.snapshot_stats(
            self.filter.min_time_snapshot, self.filter.max_time_snapshot
        )

    def _calculate_filtered_data(self) -> None:
        for trace in self.stack_traces:
            trace.added_to_tree[TraceScope.FILTERED] = 0
            trace.child_index[TraceScope.FILTERED] = [-1] * trace.num_frames

        flt = self.filter
        flt.operations = []
        flt.operation_groups = {}
        flt.stack_trace_tree.clear()
        flt.tag_tree = MemoryTagTree()

        if self._timeline is None:
            return

        first, _ = self._timeline.index_before(flt.min_time_snapshot)
        last, _ = self._timeline.index_before(flt.max_time_snapshot)
        last = min(last + 1, len(self.operations) - 1)

        live_blocks = 0
        live_size = 0
        for op in self.operations[first : last + 1]:
            if not self.is_in_filter(op):
                continue
            flt.operations.append(op)
            live_blocks, live_size = _update_live(op, live_blocks, live_size)
            add_to_memory_groups(
                flt.operation_groups, op, live_blocks, live_size, self.is_in_filter
            )
            add_to_stack_tree(
                flt.stack_trace_tree, op, TraceScope.FILTERED, self.is_in_filter
            )
            flt.tag_tree.add_operation(op)

        self._report(100.0, "Done!")
"""Linking of operations into chains, global stats, checkpoints and snapshots over time."""

from __future__ import annotations

from typing import Iterable

from memtuner.model import (
    HistogramBinPeak,
    LocalPeak,
    MemoryOperation,
    MemoryStats,
    OpType,
    TimedStats,
)
from memtuner.statsops import fill_stats_alloc, fill_stats_free, fill_stats_realloc

_ALLOC_TYPES = (OpType.ALLOC, OpType.CALLOC, OpType.ALLOC_ALIGNED)
_REALLOC_TYPES = (OpType.REALLOC, OpType.REALLOC_ALIGNED)

_BIT63 = 1 << 63
_BIT31 = 1 << 31


def link_operations(
    operations: Iterable[MemoryOperation], min_marker_time: int
) -> tuple[list[MemoryOperation], list[MemoryOperation], int, int]:
    """Sort operations by time, chain those on the same block and drop invalid ones.

    Returns the valid operations, the operations reported as invalid, and the
    minimum and maximum time of the capture. Raises ValueError if no valid
    operation remains.
    """
    ordered = sorted(operations, key=lambda op: op.operation_time)
    invalid: list[MemoryOperation] = []
    live: dict[int, MemoryOperation] = {}

    for op in ordered:
        op.is_valid = True
        op_type = op.operation_type

        if op_type in _ALLOC_TYPES:
            if op.pointer in live:
                op.is_valid = False
            else:
                live[op.pointer] = op

        elif op_type in _REALLOC_TYPES:
            old = None
            if op.previous_pointer:
                old = live.pop(op.previous_pointer, None)
                if old is None:
                    invalid.append(op)
                    op.is_valid = False
            elif op.pointer in live:
                invalid.append(op)
                op.is_valid = False

            if old is not None:
                op.chain_prev = old
                old.chain_next = op
            live[op.pointer] = op

        elif op_type == OpType.FREE:
            old = live.pop(op.pointer, None)
            if old is None:
                invalid.append(op)
                op.is_valid = False
            else:
                old.chain_next = op
                op.chain_prev = old
                op.alloc_size = old.alloc_size
                op.overhead = old.overhead

    valid = [op for op in ordered if op.is_valid]
    if not valid:
        raise ValueError("capture holds no valid operations")

    min_time = min(valid[0].operation_time, min_marker_time)
    max_time = valid[-1].operation_time
    return valid, invalid, min_time, max_time


def verify_stats(stats: MemoryStats) -> bool:
    """Return False if any value has its sign bit set, as an underflow would."""
    wide = (stats.memory_usage, stats.memory_usage_peak)
    narrow = (
        stats.overhead,
        stats.overhead_peak,
        stats.number_of_operations,
        stats.number_of_allocations,
        stats.number_of_reallocations,
        stats.number_of_frees,
        stats.number_of_live_blocks,
    )
    if any(v & _BIT63 for v in wide) or any(v & _BIT31 for v in narrow):
        return False
    for b in stats.histogram:
        if b.size & _BIT63 or b.size_peak & _BIT63:
            return False
        if any(v & _BIT31 for v in (b.overhead, b.overhead_peak, b.count, b.count_peak)):
            return False
    return True


def _granularity_mask(num_ops: int) -> int:
    granularity = 2048
    if num_ops > 1024 * 1024:
        granularity = 4096
    if num_ops > 10 * 1024 * 1024:
        granularity = 8192
    return granularity - 1


def _update_local_peak(peak: LocalPeak, stats: MemoryStats, index: int) -> None:
    peak.memory_usage_peak = max(peak.memory_usage_peak, stats.memory_usage)
    peak.overhead_peak = max(peak.overhead_peak, stats.overhead)
    peak.live_blocks_peak = max(peak.live_blocks_peak, stats.number_of_live_blocks)
    bp = peak.histogram[index]
    b = stats.histogram[index]
    bp.size_peak = max(bp.size_peak, b.size)
    bp.overhead_peak = max(bp.overhead_peak, b.overhead)
    bp.count_peak = max(bp.count_peak, b.count)


def _apply(op: MemoryOperation, stats: MemoryStats) -> None:
    stats.number_of_operations += 1
    if op.operation_type in _ALLOC_TYPES:
        fill_stats_alloc(op, stats)
    elif op.operation_type in _REALLOC_TYPES:
        fill_stats_realloc(op, stats)
    elif op.operation_type == OpType.FREE:
        fill_stats_free(op, stats)


class Timeline:
    """Global statistics of time-ordered operations with checkpoints for fast range queries.

    ``graph`` holds, for every operation, the memory usage and the number of
    live blocks right after it.
    """

    def __init__(self, operations: list[MemoryOperation]) -> None:
        if not operations:
            raise ValueError("a timeline needs at least one operation")
        self.operations = operations
        self.stats = MemoryStats()
        self.timed_stats: list[TimedStats] = []
        self.graph: list[tuple[int, int]] = []

        mask = _granularity_mask(len(operations))
        stats = self.stats
        local_peak = LocalPeak()

        for i, op in enumerate(operations):
            if i & mask == 0:
                self.timed_stats.append(
                    TimedStats(op.operation_time, i, local_peak, stats.copy())
                )
                local_peak = LocalPeak()

            stats.number_of_operations += 1
            if op.operation_type in _ALLOC_TYPES:
                _update_local_peak(local_peak, stats, fill_stats_alloc(op, stats))
            elif op.operation_type in _REALLOC_TYPES:
                _update_local_peak(local_peak, stats, fill_stats_realloc(op, stats))
            elif op.operation_type == OpType.FREE:
                fill_stats_free(op, stats)

            self.graph.append((stats.memory_usage, stats.number_of_live_blocks))

        last = operations[-1]
        self.timed_stats.append(
            TimedStats(last.operation_time, len(operations) - 1, local_peak, stats.copy())
        )

    def _search_operations(self, ts_idx: int, time: int, after: bool) -> tuple[int, int]:
        ts_idx = max(ts_idx, 1)
        start = self.timed_stats[ts_idx - 1].operation_index
        end = self.timed_stats[ts_idx].operation_index + 1
        timed_index = ts_idx - 1
        ops = self.operations

        while end > start:
            mid = (start + end) // 2
            if ops[mid].operation_time < time:
                start = mid
            else:
                end = mid
            if end - start == 1:
                if after:
                    if ops[start].operation_time > time:
                        return start, timed_index
                    return end, timed_index
                if ops[start].operation_time >= time:
                    return (start if start == 0 else start - 1), timed_index
                return end, timed_index
        return 0, timed_index

    def _search_checkpoints(self, time: int) -> int:
        ts_idx = 0
        lo = 0
        hi = len(self.timed_stats) - 1
        while hi > lo:
            mid = (lo + hi) // 2
            if self.timed_stats[mid].time < time:
                lo = mid
            else:
                hi = mid
            if hi - lo == 1:
                ts_idx = hi
                break
        return ts_idx

    def index_before(self, time: int) -> tuple[int, int]:
        """Return the operation index at or before time and its checkpoint index."""
        if len(self.timed_stats) == 2:
            ts_idx = 1
        else:
            ts_idx = self._search_checkpoints(time)
        return self._search_operations(ts_idx, time, after=False)

    def index_after(self, time: int) -> tuple[int, int]:
        """Return the index of the first operation after time and its checkpoint index."""
        return self._search_operations(self._search_checkpoints(time), time, after=True)

    def ranged_stats(self, stats: MemoryStats, start: int, end: int) -> None:
        """Apply the operations in [start, end) to stats."""
        for op in self.operations[start:end]:
            _apply(op, stats)

    def snapshot_stats(self, min_time: int, max_time: int) -> MemoryStats:
        """Return statistics for the time range between min_time and max_time."""
        min_idx, min_timed = self.index_before(min_time)
        max_idx, max_timed = self.index_after(max_time)
        if min_idx != 0:
            min_idx += 1

        timed = self.timed_stats
        start_stats = timed[min_timed].stats.copy()
        snap = start_stats.copy()

        if max_timed - min_timed < 2:
            self.ranged_stats(snap, timed[min_timed].operation_index, min_idx)
            snap.set_peaks_to_current()
            self.ranged_stats(snap, min_idx, max_idx)
            snap.number_of_operations -= start_stats.number_of_operations
            snap.number_of_allocations -= start_stats.number_of_allocations
            snap.number_of_frees -= start_stats.number_of_frees
            snap.number_of_reallocations -= start_stats.number_of_reallocations
            return snap

        self.ranged_stats(start_stats, timed[min_timed].operation_index, min_idx)
        snap = start_stats.copy()
        snap.set_peaks_to_current()
        self.ranged_stats(snap, min_idx, timed[min_timed + 1].operation_index)

        local = LocalPeak(
            memory_usage_peak=snap.memory_usage,
            overhead_peak=snap.overhead,
            histogram=[
                HistogramBinPeak(b.size_peak, b.overhead_peak, b.count_peak)
                for b in snap.histogram
            ],
        )
        for checkpoint in timed[min_timed + 2 : max_timed + 1]:
            peak = checkpoint.local_peak
            local.memory_usage_peak = max(local.memory_usage_peak, peak.memory_usage_peak)
            local.overhead_peak = max(local.overhead_peak, peak.overhead_peak)
            for mine, theirs in zip(local.histogram, peak.histogram):
                mine.size_peak = max(mine.size_peak, theirs.size_peak)
                mine.overhead_peak = max(mine.overhead_peak, theirs.overhead_peak)
                mine.count_peak = max(mine.count_peak, theirs.count_peak)

        snap.set_peaks_from(local)
        ts = timed[max_timed]
        current = ts.stats
        snap.memory_usage = current.memory_usage
        snap.overhead = current.overhead
        snap.number_of_operations = current.number_of_operations - start_stats.number_of_operations
        snap.number_of_allocations = (
            current.number_of_allocations - start_stats.number_of_allocations
        )
        snap.number_of_frees = current.number_of_frees - start_stats.number_of_frees
        snap.number_of_reallocations = (
            current.number_of_reallocations - start_stats.number_of_reallocations
        )
        snap.number_of_live_blocks = current.number_of_live_blocks
        for mine, theirs in zip(snap.histogram, current.histogram):
            mine.size = theirs.size
            mine.overhead = theirs.overhead
            mine.count = theirs.count

        self.ranged_stats(snap, ts.operation_index, max_idx + 1)
        return snap

    def graph_at(self, time: int) -> tuple[int, int]:
        """Return (memory usage, live blocks) at the given time."""
        index, _ = self.index_before(time)
        return self.graph[min(index, len(self.graph) - 1)]
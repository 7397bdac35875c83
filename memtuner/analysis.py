"""Operation filtering, grouping by call stack and call tree building."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from memtuner.model import (
    MemoryOperation,
    MemoryOperationGroup,
    MemoryTagTree,
    ModuleInfo,
    OpType,
    StackTrace,
    StackTraceTree,
)
from memtuner.statsops import histogram_bin_index, is_leaked

ALL_HEAPS = 0xFFFFFFFFFFFFFFFF
NO_HISTOGRAM_BIN = 0xFFFFFFFF

InFilter = Callable[[MemoryOperation], bool]
AddressResolver = Callable[[int], int]
GroupMap = dict[Optional[StackTrace], MemoryOperationGroup]

_ALLOC_TYPES = (OpType.ALLOC, OpType.CALLOC, OpType.ALLOC_ALIGNED)
_REALLOC_TYPES = (OpType.REALLOC, OpType.REALLOC_ALIGNED)


class TraceScope(enum.IntEnum):
    """Which call tree a stack trace is being added to."""

    GLOBAL = 0
    FILTERED = 1


def _valid_only(op: MemoryOperation) -> bool:
    return op.is_valid


@dataclass(eq=False)
class FilterDescription:
    """Filtering criteria and the data built from the operations that pass them."""

    histogram_index: int = NO_HISTOGRAM_BIN
    tag_hash: int = 0
    thread_id: int = 0
    min_time_snapshot: int = 0
    max_time_snapshot: int = 0
    leaked_only: bool = False
    tag_tree: MemoryTagTree = field(default_factory=MemoryTagTree)
    operations: list[MemoryOperation] = field(default_factory=list)
    operation_groups: GroupMap = field(default_factory=dict)
    stack_trace_tree: StackTraceTree = field(default_factory=StackTraceTree)

    def matches(
        self,
        op: MemoryOperation,
        current_heap: int = ALL_HEAPS,
        current_module: Optional[ModuleInfo] = None,
    ) -> bool:
        """Return True if a valid operation passes every active criterion."""
        if not op.is_valid:
            return False
        if current_heap != ALL_HEAPS and op.allocator_handle != current_heap:
            return False
        if (
            self.histogram_index != NO_HISTOGRAM_BIN
            and self.histogram_index != histogram_bin_index(op.alloc_size)
        ):
            return False
        if self.tag_hash != 0 and self.tag_hash != op.tag:
            return False
        if self.thread_id != 0 and self.thread_id != op.thread_id:
            return False
        if not self.min_time_snapshot <= op.operation_time <= self.max_time_snapshot:
            return False
        if current_module is not None:
            frames = op.stack_trace.frames if op.stack_trace is not None else ()
            if not any(current_module.check_address(address) for address in frames):
                return False
        if self.leaked_only and not is_leaked(op):
            return False
        return True


def assign_address_ids(traces: Iterable[StackTrace], resolver: AddressResolver) -> None:
    """Give every frame its symbol address ID and drop leading frames that have none.

    The resolver maps an address to an ID, 0 meaning the frame belongs to the
    capturing library itself. Each distinct address is resolved once. The
    per-scope child indices of every trace are reset.
    """
    cache: dict[int, int] = {}
    for trace in traces:
        ids = []
        for address in trace.frames:
            if address not in cache:
                cache[address] = resolver(address)
            ids.append(cache[address])

        skip = 0
        while skip < len(ids) - 1 and ids[skip] == 0:
            skip += 1

        trace.frames = trace.frames[skip:]
        trace.address_ids = ids[skip:]
        count = len(trace.frames)
        trace.child_index = [[-1] * count, [-1] * count]
        trace.added_to_tree[TraceScope.GLOBAL] = 0


def _peak_updates(group: MemoryOperationGroup, live_blocks: int, live_size: int) -> None:
    if group.live_size > group.peak_size:
        group.peak_size = group.live_size
        group.peak_size_global = live_size
    if group.live_count > group.live_count_peak:
        group.live_count_peak = group.live_count
        group.live_count_peak_global = live_blocks


def _release_previous(groups: GroupMap, prev: MemoryOperation) -> None:
    prev_group = groups.setdefault(prev.stack_trace, MemoryOperationGroup())
    prev_group.live_count -= 1
    prev_group.live_size -= prev.alloc_size
    prev_group.histogram[histogram_bin_index(prev.alloc_size)] -= 1


def _record(group: MemoryOperationGroup, op: MemoryOperation) -> None:
    group.operations.append(op)
    group.count += 1
    group.min_size = min(group.min_size, op.alloc_size)
    group.max_size = max(group.max_size, op.alloc_size)


def add_to_memory_groups(
    groups: GroupMap,
    op: MemoryOperation,
    live_blocks: int,
    live_size: int,
    in_filter: Optional[InFilter] = None,
) -> None:
    """Account an operation to the group of its call stack.

    live_blocks and live_size are the totals right after the operation; they are
    stored when a group reaches a new peak. in_filter decides whether the block
    a free or realloc releases is counted back out of its own group.
    """
    in_filter = in_filter or _valid_only
    op_type = op.operation_type

    if op_type in _ALLOC_TYPES:
        group = groups.setdefault(op.stack_trace, MemoryOperationGroup())
        _record(group, op)
        group.live_count += 1
        group.live_size += op.alloc_size
        index = histogram_bin_index(op.alloc_size)
        group.histogram[index] += 1
        group.histogram_peak[index] = max(group.histogram[index], group.histogram_peak[index])
        _peak_updates(group, live_blocks, live_size)

    elif op_type == OpType.FREE:
        prev = op.chain_prev
        if prev is not None and in_filter(prev):
            _release_previous(groups, prev)
        group = groups.setdefault(op.stack_trace, MemoryOperationGroup())
        _record(group, op)
        group.peak_size = max(group.peak_size, group.live_size)
        group.histogram[histogram_bin_index(op.alloc_size)] -= 1

    elif op_type in _REALLOC_TYPES:
        prev = op.chain_prev
        if prev is not None and in_filter(prev):
            _release_previous(groups, prev)
        group = groups.setdefault(op.stack_trace, MemoryOperationGroup())
        _record(group, op)
        group.live_count += 1
        group.live_size += op.alloc_size
        _peak_updates(group, live_blocks, live_size)
        index = histogram_bin_index(op.alloc_size)
        group.histogram[index] += 1
        group.histogram_peak[index] = max(group.histogram[index], group.histogram_peak[index])


def _account(node: StackTraceTree, size: int, overhead: int, kind: int, time: int) -> None:
    node.mem_usage += size
    node.mem_usage_peak = max(node.mem_usage, node.mem_usage_peak)
    node.overhead += overhead
    node.overhead_peak = max(node.overhead, node.overhead_peak)
    if kind != StackTraceTree.COUNT:
        node.op_count[kind] += 1
    if node.min_time == 0:
        node.min_time = time
    node.max_time = time


def _add_to_tree(
    root: StackTraceTree,
    trace: StackTrace,
    size: int,
    overhead: int,
    scope: int,
    kind: int,
    time: int,
) -> None:
    _account(root, size, overhead, kind, time)

    count = trace.num_frames
    if trace.added_to_tree[scope] == 0:
        root.stack_traces.append(trace)
        if count == 0:
            trace.added_to_tree[scope] = -1

    index = trace.child_index[scope]
    if len(index) != count:
        index = [-1] * count
        trace.child_index[scope] = index
    ids = trace.address_ids if len(trace.address_ids) == count else trace.frames

    node = root
    for frame in range(count - 1, -1, -1):
        depth = count - frame
        uid = ids[frame]
        pos = index[frame]
        if pos < 0 or pos >= len(node.children) or node.children[pos].address_id != uid:
            pos = next(
                (i for i, child in enumerate(node.children) if child.address_id == uid), -1
            )
            if pos < 0:
                node.children.append(StackTraceTree(address_id=uid, depth=depth, parent=node))
                pos = len(node.children) - 1
            index[frame] = pos
        node = node.children[pos]

        if trace.added_to_tree[scope] < depth:
            node.stack_traces.append(trace)
            trace.added_to_tree[scope] = depth

        _account(node, size, overhead, kind, time)


def add_to_stack_tree(
    tree: StackTraceTree,
    op: MemoryOperation,
    scope: int,
    in_filter: Optional[InFilter] = None,
) -> None:
    """Account an operation along the path of its call stack in the call tree.

    A free is accounted on the call stack of the block it releases; the released
    size is subtracted only if that block passes in_filter.
    """
    in_filter = in_filter or _valid_only
    op_type = op.operation_type
    time = op.operation_time

    if op_type in _ALLOC_TYPES:
        _add_to_tree(
            tree, op.stack_trace, op.alloc_size, op.overhead, scope, StackTraceTree.ALLOC, time
        )

    elif op_type == OpType.FREE:
        prev = op.chain_prev
        if prev is None:
            raise ValueError("free operation is not linked to the block it releases")
        if in_filter(prev):
            _add_to_tree(
                tree,
                prev.stack_trace,
                -prev.alloc_size,
                -prev.overhead,
                scope,
                StackTraceTree.FREE,
                time,
            )
        else:
            _add_to_tree(tree, prev.stack_trace, 0, 0, scope, StackTraceTree.FREE, time)

    elif op_type in _REALLOC_TYPES:
        prev = op.chain_prev
        if prev is not None and in_filter(prev):
            _add_to_tree(
                tree,
                prev.stack_trace,
                -prev.alloc_size,
                -prev.overhead,
                scope,
                StackTraceTree.COUNT,
                time,
            )
        _add_to_tree(
            tree, op.stack_trace, op.alloc_size, op.overhead, scope, StackTraceTree.REALLOC, time
        )
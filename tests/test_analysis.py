import pytest

from memtuner.analysis import (
    ALL_HEAPS,
    FilterDescription,
    TraceScope,
    add_to_memory_groups,
    add_to_stack_tree,
    assign_address_ids,
)
from memtuner.model import (
    MemoryOperation,
    ModuleInfo,
    OpType,
    StackTrace,
    StackTraceTree,
)
from memtuner.statsops import histogram_bin_index


def make_trace(frames, ids=None):
    trace = StackTrace(frames=list(frames))
    trace.address_ids = list(ids if ids is not None else frames)
    return trace


def make_op(op_type, trace=None, size=0, overhead=0, time=0, **kwargs):
    return MemoryOperation(
        operation_type=op_type,
        stack_trace=trace,
        alloc_size=size,
        overhead=overhead,
        operation_time=time,
        **kwargs,
    )


def wide_filter(**kwargs):
    return FilterDescription(min_time_snapshot=0, max_time_snapshot=1000, **kwargs)


# --- FilterDescription ---------------------------------------------------


def test_filter_accepts_valid_op_by_default():
    op = make_op(OpType.ALLOC, make_trace([1]), size=16, time=5)
    assert wide_filter().matches(op) is True


def test_filter_rejects_invalid_op():
    op = make_op(OpType.ALLOC, make_trace([1]), size=16, time=5, is_valid=False)
    assert wide_filter().matches(op) is False


def test_filter_heap():
    op = make_op(OpType.ALLOC, make_trace([1]), time=5, allocator_handle=7)
    f = wide_filter()
    assert f.matches(op, current_heap=7) is True
    assert f.matches(op, current_heap=8) is False
    assert f.matches(op, current_heap=ALL_HEAPS) is True


def test_filter_histogram_bin():
    op = make_op(OpType.ALLOC, make_trace([1]), size=100, time=5)
    assert wide_filter(histogram_index=histogram_bin_index(100)).matches(op) is True
    assert wide_filter(histogram_index=histogram_bin_index(100) + 1).matches(op) is False


def test_filter_tag_and_thread():
    op = make_op(OpType.ALLOC, make_trace([1]), time=5, tag=3, thread_id=9)
    assert wide_filter(tag_hash=3, thread_id=9).matches(op) is True
    assert wide_filter(tag_hash=4).matches(op) is False
    assert wide_filter(thread_id=10).matches(op) is False


def test_filter_time_range_is_inclusive():
    f = FilterDescription(min_time_snapshot=10, max_time_snapshot=20)
    assert f.matches(make_op(OpType.ALLOC, make_trace([1]), time=10)) is True
    assert f.matches(make_op(OpType.ALLOC, make_trace([1]), time=20)) is True
    assert f.matches(make_op(OpType.ALLOC, make_trace([1]), time=9)) is False
    assert f.matches(make_op(OpType.ALLOC, make_trace([1]), time=21)) is False


def test_filter_module_in_stack():
    module = ModuleInfo(path="/bin/app", base_address=0x1000, size=0x100)
    inside = make_op(OpType.ALLOC, make_trace([0x50, 0x1010]), time=5)
    outside = make_op(OpType.ALLOC, make_trace([0x50, 0x2000]), time=5)
    f = wide_filter()
    assert f.matches(inside, current_module=module) is True
    assert f.matches(outside, current_module=module) is False


def test_filter_leaked_only():
    f = wide_filter(leaked_only=True)
    assert f.matches(make_op(OpType.ALLOC, make_trace([1]), size=8, time=5)) is True
    assert f.matches(make_op(OpType.FREE, make_trace([1]), size=8, time=5)) is False
    assert f.matches(make_op(OpType.REALLOC, make_trace([1]), size=0, time=5)) is False


# --- assign_address_ids --------------------------------------------------


def test_address_ids_resolved_once_per_address():
    calls = []

    def resolver(address):
        calls.append(address)
        return address + 1000

    t1 = StackTrace(frames=[1, 2])
    t2 = StackTrace(frames=[2, 3])
    assign_address_ids([t1, t2], resolver)
    assert sorted(calls) == [1, 2, 3]
    assert t1.address_ids == [resolver(1), resolver(2)]
    assert t2.frames == [2, 3]


def test_leading_unresolved_frames_are_dropped():
    ids = {1: 0, 2: 0, 3: 7, 4: 8}
    trace = StackTrace(frames=[1, 2, 3, 4])
    assign_address_ids([trace], ids.__getitem__)
    assert trace.frames == [3, 4]
    assert trace.address_ids == [7, 8]
    assert trace.num_frames == 2


def test_all_unresolved_keeps_one_frame():
    trace = StackTrace(frames=[5, 6, 7])
    assign_address_ids([trace], lambda address: 0)
    assert trace.num_frames == 1
    assert trace.frames == [7]


def test_address_ids_reset_indices():
    trace = StackTrace(frames=[1, 2, 3])
    trace.added_to_tree[TraceScope.GLOBAL] = 3
    assign_address_ids([trace], lambda address: address)
    assert trace.child_index == [[-1, -1, -1], [-1, -1, -1]]
    assert trace.added_to_tree[TraceScope.GLOBAL] == 0


# --- add_to_memory_groups ------------------------------------------------


def test_alloc_creates_group():
    trace = make_trace([1])
    op = make_op(OpType.ALLOC, trace, size=100, overhead=8)
    groups = {}
    add_to_memory_groups(groups, op, 1, 100)
    group = groups[trace]
    assert group.operations == [op]
    assert group.count == 1
    assert group.live_count == 1
    assert group.min_size == 100 and group.max_size == 100
    assert group.live_size == 100
    assert group.peak_size == 100
    assert group.peak_size_global == 100
    assert group.live_count_peak == 1
    assert group.live_count_peak_global == 1
    assert group.histogram[histogram_bin_index(100)] == 1
    assert group.histogram_peak[histogram_bin_index(100)] == 1


def test_two_allocs_track_min_max_and_peak():
    trace = make_trace([1])
    groups = {}
    add_to_memory_groups(groups, make_op(OpType.ALLOC, trace, size=100), 1, 100)
    add_to_memory_groups(groups, make_op(OpType.ALLOC, trace, size=200), 2, 300)
    group = groups[trace]
    assert group.min_size == 100
    assert group.max_size == 200
    assert group.live_size == 300
    assert group.peak_size == 300
    assert group.peak_size_global == 300
    assert group.live_count_peak_global == 2


def test_free_releases_allocating_group():
    t_alloc, t_free = make_trace([1]), make_trace([2])
    alloc = make_op(OpType.ALLOC, t_alloc, size=64)
    free = make_op(OpType.FREE, t_free, size=64, chain_prev=alloc)
    groups = {}
    add_to_memory_groups(groups, alloc, 1, 64, lambda op: True)
    add_to_memory_groups(groups, free, 0, 0, lambda op: True)
    assert groups[t_alloc].live_count == 0
    assert groups[t_alloc].live_size == 0
    assert groups[t_alloc].peak_size == 64
    assert groups[t_alloc].histogram[histogram_bin_index(64)] == 0
    assert groups[t_free].operations == [free]
    assert groups[t_free].live_count == 0


def test_free_of_filtered_out_block_keeps_group_live():
    t_alloc, t_free = make_trace([1]), make_trace([2])
    alloc = make_op(OpType.ALLOC, t_alloc, size=64)
    free = make_op(OpType.FREE, t_free, size=64, chain_prev=alloc)
    groups = {}
    add_to_memory_groups(groups, alloc, 1, 64)
    add_to_memory_groups(groups, free, 0, 0, lambda op: False)
    assert groups[t_alloc].live_count == 1
    assert groups[t_alloc].live_size == 64


def test_realloc_moves_block_between_groups():
    t1, t2 = make_trace([1]), make_trace([2])
    alloc = make_op(OpType.ALLOC, t1, size=32)
    realloc = make_op(OpType.REALLOC, t2, size=64, chain_prev=alloc)
    groups = {}
    add_to_memory_groups(groups, alloc, 1, 32)
    add_to_memory_groups(groups, realloc, 1, 64)
    assert groups[t1].live_size == 0
    assert groups[t1].live_count == 0
    assert groups[t2].live_size == 64
    assert groups[t2].live_count == 1
    assert groups[t2].histogram[histogram_bin_index(64)] == 1


# --- add_to_stack_tree ---------------------------------------------------


def test_alloc_builds_path_from_outermost_frame():
    trace = make_trace([10, 20, 30])
    tree = StackTraceTree()
    add_to_stack_tree(tree, make_op(OpType.ALLOC, trace, size=100, overhead=4, time=5),
                      TraceScope.GLOBAL)
    assert tree.mem_usage == 100
    assert tree.overhead == 4
    assert tree.op_count[StackTraceTree.ALLOC] == 1
    assert tree.min_time == 5 and tree.max_time == 5
    first = tree.children[0]
    assert first.address_id == 30 and first.depth == 1
    second = first.children[0]
    assert second.address_id == 20 and second.depth == 2
    leaf = second.children[0]
    assert leaf.address_id == 10 and leaf.depth == 3
    assert leaf.parent is second
    assert leaf.stack_traces == [trace]
    assert tree.stack_traces == [trace]


def test_repeated_trace_is_listed_once():
    trace = make_trace([10, 20])
    tree = StackTraceTree()
    add_to_stack_tree(tree, make_op(OpType.ALLOC, trace, size=100, time=5), TraceScope.GLOBAL)
    add_to_stack_tree(tree, make_op(OpType.ALLOC, trace, size=100, time=7), TraceScope.GLOBAL)
    leaf = tree.children[0].children[0]
    assert tree.stack_traces == [trace]
    assert leaf.stack_traces == [trace]
    assert leaf.mem_usage == 200
    assert leaf.min_time == 5 and leaf.max_time == 7
    assert len(tree.children) == 1


def test_shared_prefix_shares_nodes():
    t1 = make_trace([10, 20, 30])
    t2 = make_trace([11, 20, 30])
    tree = StackTraceTree()
    add_to_stack_tree(tree, make_op(OpType.ALLOC, t1, size=8, time=1), TraceScope.GLOBAL)
    add_to_stack_tree(tree, make_op(OpType.ALLOC, t2, size=8, time=2), TraceScope.GLOBAL)
    assert len(tree.children) == 1
    middle = tree.children[0].children[0]
    assert [c.address_id for c in middle.children] == [10, 11]
    assert middle.stack_traces == [t1, t2]


def test_free_subtracts_usage():
    trace = make_trace([10, 20])
    alloc = make_op(OpType.ALLOC, trace, size=100, overhead=4, time=1)
    free = make_op(OpType.FREE, make_trace([99]), size=100, time=2, chain_prev=alloc)
    tree = StackTraceTree()
    add_to_stack_tree(tree, alloc, TraceScope.GLOBAL)
    add_to_stack_tree(tree, free, TraceScope.GLOBAL)
    leaf = tree.children[0].children[0]
    assert tree.mem_usage == 0 and leaf.mem_usage == 0
    assert leaf.mem_usage_peak == 100
    assert leaf.overhead == 0
    assert leaf.op_count[StackTraceTree.FREE] == 1


def test_free_of_filtered_out_block_keeps_usage():
    trace = make_trace([10])
    alloc = make_op(OpType.ALLOC, trace, size=100, time=1)
    free = make_op(OpType.FREE, trace, size=100, time=2, chain_prev=alloc)
    tree = StackTraceTree()
    add_to_stack_tree(tree, alloc, TraceScope.GLOBAL)
    add_to_stack_tree(tree, free, TraceScope.GLOBAL, lambda op: False)
    assert tree.mem_usage == 100
    assert tree.op_count[StackTraceTree.FREE] == 1


def test_unlinked_free_raises():
    free = make_op(OpType.FREE, make_trace([1]), size=8)
    with pytest.raises(ValueError):
        add_to_stack_tree(StackTraceTree(), free, TraceScope.GLOBAL)


def test_realloc_replaces_previous_usage():
    alloc = make_op(OpType.ALLOC, make_trace([1]), size=100, time=1)
    realloc = make_op(OpType.REALLOC, make_trace([2]), size=300, time=2, chain_prev=alloc)
    tree = StackTraceTree()
    add_to_stack_tree(tree, alloc, TraceScope.GLOBAL)
    add_to_stack_tree(tree, realloc, TraceScope.GLOBAL)
    assert tree.mem_usage == 300
    assert tree.op_count == [1, 0, 1]
    by_id = {c.address_id: c for c in tree.children}
    assert by_id[1].mem_usage == 0
    assert by_id[2].mem_usage == 300


def test_scopes_are_independent():
    trace = make_trace([10, 20])
    global_tree, filtered_tree = StackTraceTree(), StackTraceTree()
    add_to_stack_tree(global_tree, make_op(OpType.ALLOC, trace, size=8, time=1),
                      TraceScope.GLOBAL)
    add_to_stack_tree(filtered_tree, make_op(OpType.ALLOC, trace, size=8, time=1),
                      TraceScope.FILTERED)
    assert filtered_tree.stack_traces == [trace]
    assert filtered_tree.children[0].children[0].stack_traces == [trace]
    assert trace.added_to_tree == [2, 2]
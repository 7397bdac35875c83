# memtuner

`memtuner` reads binary memory-tracking capture files (`.MTuner`) and analyses
what happened to memory during the captured run. It covers every allocation,
reallocation and free. From those it builds global and per-snapshot statistics,
allocation-size histograms, and groups of operations keyed by call stack. It
also builds call-stack and memory-tag trees and lists of heaps, modules and
markers.

## Installation

```
pip install memtuner
```

Compressed captures are split into LZ4 chunks. They are read through the `lz4`
package.

## Library use

```python
from memtuner.capture import Capture, LoadResult
from memtuner.parser import LoadError

capture = Capture()
capture.set_load_progress_callback(lambda percent, message: print(f"{percent:5.1f}% {message}"))
try:
    result = capture.load_bin("capture.MTuner")
except LoadError as exc:
    print("cannot load:", exc)
else:
    if result is LoadResult.PARTIAL:
        print("capture was only partially loaded")
    # The resolver maps a frame address to a symbol ID; 0 drops leading frames.
    capture.build_analyze_data(lambda address: address)
    print(capture.stats_global.memory_usage_peak, len(capture.memory_leaks))

    capture.set_snapshot(capture.min_time, capture.max_time)
    capture.select_thread(thread_id)
    capture.set_filtering_enabled(True)
    print(len(capture.filter.operations), capture.stats_snapshot.number_of_operations)
```

`load_bin` returns `LoadResult.SUCCESS` or `LoadResult.PARTIAL`. It raises
`LoadError` when the file cannot be used.

Main modules:

- `memtuner.capture`: the `Capture` class. It loads a file and then filters the
  operations by heap (`current_heap`), module (`current_module`), thread, tag,
  histogram bin, leaks and time snapshot. It also converts clock ticks to seconds
  with `float_time` and `clocks_from_time`, and looks up markers with
  `marker_name` and `marker_color`.
- `memtuner.parser`: `parse_stream`, the low-level stream parser. It returns a
  `ParseResult`.
- `memtuner.binloader`: `BinLoader`, which reads plain or chunk-compressed
  streams, and `is_compressed_signature`.
- `memtuner.timeline`: `link_operations`, which chains the operations on one
  block and drops invalid ones; `verify_stats`; and `Timeline`, which holds the
  global statistics, the checkpoints, the usage graph and the snapshot
  statistics.
- `memtuner.analysis`: `FilterDescription`, `assign_address_ids`,
  `add_to_memory_groups` and `add_to_stack_tree`.
- `memtuner.model` and `memtuner.statsops`: the data model (operations, stats,
  trees, modules, markers) and the helpers that update statistics.
- `memtuner.views`: view models that do not depend on any UI. `module_rows`
  filters and formats the module list. `ModuleSelection` toggles which module
  is selected. `InjectOptions` holds the options for starting a capture.

## What it does not do

The package has no command-line tool. It does not write text or XML reports of
operations or groups. `GroupSort` is defined in `memtuner.model`, but nothing in
the package sorts groups with it. The package also does not resolve symbols
itself: `build_analyze_data` needs a resolver function from the caller. It does
not start or inject into processes either. `InjectOptions` only models the
option state.
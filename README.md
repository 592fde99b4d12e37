# trdlserver

Server-side building blocks for a trusted software delivery service. The
package has no runtime dependencies beyond the standard library.

## Modules

- `trdlserver.storage`: `StorageEntry`, `storage_entry_json`, a thread-safe
  `InMemoryStorage` (`get`, `put`, `delete`, `list`), and the task manager
  `Configuration` with `get_configuration` / `put_configuration`.
- `trdlserver.task`: `Task` records, `TaskStatus` (`QUEUED`, `RUNNING`,
  `SUCCEEDED`, `FAILED`, `CANCELED`), `TaskState` (`QUEUED`, `RUNNING`,
  `COMPLETED`) and functions that move a task between queued, running and
  completed storage keys and store its log.
- `trdlserver.worker`: `Worker`, which takes `WorkerTask` items from a queue
  and runs them one at a time; `TaskContext`, a cancellation scope with an
  optional deadline and a log buffer; `Job` and `SafeBuffer`.
- `trdlserver.manager`: `Manager`, which queues tasks (`add_task`,
  `run_task`, `add_optional_task`), records their progress in storage through
  worker callbacks, cancels tasks left queued or running by an earlier run on
  first use, applies the configured task timeout (30 minutes by default) and,
  in `periodic_func`, trims the completed task history (10 tasks by default)
  at most once an hour.
- `trdlserver.backend`: `TaskBackend.handle_request(operation, path, data,
  storage)` serving `task/configure`, `task`, `task/<uuid>`,
  `task/<uuid>/cancel` and `task/<uuid>/log` (with `offset` and `limit`,
  500 characters by default, `0` meaning no limit). Also `Operation`,
  `Response`, `error_response` and `parse_duration`.
- `trdlserver.tuf_store`: `NonAtomicTufStore`, which stages TUF metadata in
  memory and writes target files under `targets/` straight into a
  `Filesystem` you provide; `TufRepoPrivKeys`, `versioned_path`,
  `compute_metadata_paths`, `compute_target_paths`.
- `trdlserver.publisher`: `Publisher`, which validates release file paths,
  stages release targets with a detached signature, stages channel files and
  in-memory files, loads or generates repository keys in storage, and lists
  existing releases; also `split_filepath` and `index_rune_with_escaping`.
- `trdlserver.harness`: helpers for end-to-end checks: running commands
  (`run_command_with_options`, `run_succeed_command`,
  `succeed_command_output_string`), `copy_in`, `get_head_commit`,
  `get_random_string`, `get_temp_dir`, `fixture_path`,
  `meets_requirement_tools`, and polling task status through a backend
  (`list_tasks`, `get_task_status`, `get_task_log`, `wait_for_task_success`,
  `wait_for_task_failure`, `wait_for_task_completion`).
- `trdlserver.util`: `SystemClock`, `FixedClock`, `LogicalError`,
  `is_env_var_true`, `buffered_piped_writer_process`, `ThroughputWriter`
  and `ThroughputReader`.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Quick look

```python
from trdlserver.storage import InMemoryStorage
from trdlserver.manager import Manager
from trdlserver.backend import TaskBackend, Operation

storage = InMemoryStorage()
manager = Manager()
backend = TaskBackend(manager)

def build(ctx, storage):
    ctx.log("building...\n")

uuid = manager.add_task(storage, build)

response = backend.handle_request(Operation.READ, f"task/{uuid}", {}, storage)
print(response.data["status"])

manager.close()
```

A task function receives a `TaskContext` and the storage; it reports failure
by raising, and the exception text becomes the task's reason.
`Manager.run_task` raises `BusyError` when a task is already queued or
running, while `Manager.add_optional_task` returns `("", False)` instead.
A task whose context is cancelled or times out fails with
`ContextCanceledError`.

Release file paths given to `Publisher.stage_release_target` must start with
`<os>-<arch>/`, where the os is one of `any`, `linux`, `darwin` or
`windows`, and the arch is one of `any`, `amd64` or `arm64`; anything else
raises `IncorrectTargetPathError`. The release is staged as
`releases/<release>/<path>` and its signature as
`signatures/<release>/<path>.sig`.

## What this package does not do

- There is no command-line program and no server process; `TaskBackend`
  is called directly from Python.
- There is no S3 or other concrete `Filesystem`, and no TUF repository
  implementation: `NonAtomicTufStore` works over any object with the
  `Filesystem` methods, and `Publisher` works with any object that follows
  `RepositoryInterface`.
- There is no PGP key handling. `Publisher` takes a `signer` callable that
  reads the release stream and returns the signature bytes; without one,
  `stage_release_target` raises `RuntimeError`.
- Consistent snapshots are not supported by `NonAtomicTufStore`.
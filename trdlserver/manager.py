"""Tasks manager: queues tasks, tracks their state in storage and prunes history."""

from __future__ import annotations

import logging
import queue
import threading
import time
from datetime import timedelta
from typing import Callable

from trdlserver.storage import StorageEntry, get_configuration
from trdlserver.task import (
    STORAGE_KEY_PREFIX_QUEUED_TASK,
    STORAGE_KEY_PREFIX_RUNNING_TASK,
    TaskState,
    TaskStatus,
    add_new_task_to_storage,
    get_task_from_storage,
    switch_task_to_completed_in_storage,
    switch_task_to_running_in_storage,
    task_log_storage_key,
    task_storage_key,
    task_storage_key_prefix,
)
from trdlserver.worker import TaskContext, Worker, WorkerTask

logger = logging.getLogger(__name__)

TASK_QUEUE_SIZE = 128
DEFAULT_TASK_TIMEOUT = timedelta(minutes=30)
DEFAULT_TASK_HISTORY_LIMIT = 10
PERIODIC_TASK_PERIOD = timedelta(hours=1)
STORAGE_KEY_LAST_PERIODIC_RUN_TIMESTAMP = "tasks_manager_last_periodic_run_timestamp"
TASK_REASON_INVALIDATED_TASK = "the task canceled due to restart of the plugin"

TaskFunc = Callable[[TaskContext, object], None]
WorkerTaskFunc = Callable[[TaskContext], None]


class BusyError(Exception):
    """Raised when a task cannot run because another one is queued or running."""

    def __init__(self, message: str = "busy") -> None:
        super().__init__(message)


class ContextCanceledError(Exception):
    """Raised when a task's context was cancelled or timed out before it finished."""

    def __init__(self, message: str = "context canceled") -> None:
        super().__init__(message)


class Manager:
    """Runs tasks one at a time through a background worker, recording them in storage."""

    def __init__(self, start_worker: bool = True) -> None:
        self.storage = None
        self.task_queue: queue.Queue = queue.Queue(maxsize=TASK_QUEUE_SIZE)
        self._lock = threading.Lock()
        self.worker = Worker(self.task_queue, self)
        self._worker_thread: threading.Thread | None = None
        if start_worker:
            self._worker_thread = threading.Thread(target=self.worker.start, daemon=True)
            self._worker_thread.start()

    def close(self) -> None:
        """Stop the background worker and wait for it to finish."""
        self.worker.stop()
        if self._worker_thread is not None:
            self._worker_thread.join()
            self._worker_thread = None

    def __enter__(self) -> Manager:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # actions

    def run_task(self, storage, task_func: TaskFunc) -> str:
        """Queue the task and return its UUID, or raise BusyError if another task is pending."""
        def queue_if_idle(worker_task_func: WorkerTaskFunc) -> str:
            if self._is_busy(storage):
                raise BusyError()
            return self._queue_task(worker_task_func)

        return self._do_task_wrap(storage, task_func, queue_if_idle)

    def add_optional_task(self, storage, task_func: TaskFunc) -> tuple[str, bool]:
        """Queue the task only if nothing is pending; return (uuid, added)."""
        try:
            return self.run_task(storage, task_func), True
        except BusyError:
            return "", False

    def add_task(self, storage, task_func: TaskFunc) -> str:
        """Queue the task unconditionally and return its UUID."""
        return self._do_task_wrap(storage, task_func, self._queue_task)

    def _do_task_wrap(self, storage, task_func: TaskFunc, f: Callable[[WorkerTaskFunc], str]) -> str:
        with self._lock:
            if self.storage is None:
                self.storage = storage
                try:
                    self._invalidate_storage(storage)
                except Exception as err:
                    raise RuntimeError(f"unable to invalidate storage: {err}") from err

            try:
                config = get_configuration(storage)
            except Exception as err:
                raise RuntimeError(f"unable to get tasks manager configuration: {err}") from err

            timeout = config.task_timeout if config is not None else DEFAULT_TASK_TIMEOUT
            return f(self.wrap_task_func(task_func, timeout))

    def wrap_task_func(self, task_func: TaskFunc, timeout: timedelta | float) -> WorkerTaskFunc:
        """Run ``task_func`` in the background, returning early if the context ends first."""

        def wrapped(ctx: TaskContext) -> None:
            ctx_with_timeout = TaskContext(ctx, timeout=timeout)
            signal = TaskContext(ctx_with_timeout)
            outcome: dict[str, BaseException | None] = {}

            def run() -> None:
                try:
                    task_func(ctx_with_timeout, self.storage)
                except BaseException as err:  # noqa: BLE001 - reported to the waiter
                    outcome["error"] = err
                else:
                    outcome["error"] = None
                signal.cancel()

            threading.Thread(target=run, daemon=True).start()
            try:
                signal.wait()
                if "error" not in outcome:
                    logger.debug("task failed: context canceled")
                    raise ContextCanceledError()
                error = outcome["error"]
                if error is not None:
                    logger.debug("task failed: %s", error)
                    raise error
                logger.debug("task succeeded")
            finally:
                ctx_with_timeout.cancel()

        return wrapped

    def _invalidate_storage(self, storage) -> None:
        uuids: list[str] = []
        for state in (TaskState.RUNNING, TaskState.QUEUED):
            prefix = task_storage_key_prefix(state)
            try:
                uuids.extend(storage.list(prefix))
            except Exception as err:
                raise RuntimeError(f'unable to list "{prefix}" in storage: {err}') from err

        for uuid in uuids:
            try:
                switch_task_to_completed_in_storage(
                    storage, TaskStatus.CANCELED, uuid, reason=TASK_REASON_INVALIDATED_TASK
                )
            except Exception as err:
                raise RuntimeError(f'unable to invalidate task "{uuid}": {err}') from err

    def _queue_task(self, worker_task_func: WorkerTaskFunc) -> str:
        uuid = add_new_task_to_storage(self.storage)
        self.task_queue.put(WorkerTask(uuid=uuid, action=worker_task_func, context=TaskContext()))
        return uuid

    def _is_busy(self, storage) -> bool:
        for prefix in (STORAGE_KEY_PREFIX_RUNNING_TASK, STORAGE_KEY_PREFIX_QUEUED_TASK):
            try:
                if storage.list(prefix):
                    return True
            except Exception as err:
                raise RuntimeError(f'unable to list "{prefix}" in storage: {err}') from err
        return False

    # worker callbacks

    def task_started_callback(self, uuid: str) -> None:
        with self._lock:
            try:
                switch_task_to_running_in_storage(self.storage, uuid)
            except Exception as err:
                raise RuntimeError(f"runtime error: {err}") from err

    def task_succeeded_callback(self, uuid: str, log: bytes | None) -> None:
        with self._lock:
            try:
                switch_task_to_completed_in_storage(self.storage, TaskStatus.SUCCEEDED, uuid, log=log)
            except Exception as err:
                raise RuntimeError(f"runtime error: {err}") from err

    def task_failed_callback(self, uuid: str, log: bytes | None, error: BaseException) -> None:
        with self._lock:
            try:
                switch_task_to_completed_in_storage(
                    self.storage, TaskStatus.FAILED, uuid, reason=str(error), log=log
                )
            except Exception as err:
                raise RuntimeError(f"runtime error: {err}") from err

    # periodic

    def periodic_func(self, storage) -> None:
        """Prune the completed task history at most once per period."""
        with self._lock:
            try:
                entry = storage.get(STORAGE_KEY_LAST_PERIODIC_RUN_TIMESTAMP)
            except Exception as err:
                raise RuntimeError(
                    f'unable to get "{STORAGE_KEY_LAST_PERIODIC_RUN_TIMESTAMP}" from storage: {err}'
                ) from err

            if entry is not None:
                try:
                    last_run = int(entry.value.decode())
                except (ValueError, UnicodeDecodeError):
                    last_run = None
                if last_run is not None and time.time() - last_run <= PERIODIC_TASK_PERIOD.total_seconds():
                    return

            start_time = int(time.time())
            self._cleanup_task_history(storage)

            try:
                storage.put(StorageEntry(STORAGE_KEY_LAST_PERIODIC_RUN_TIMESTAMP, str(start_time).encode()))
            except Exception as err:
                raise RuntimeError(
                    f'unable to put "{STORAGE_KEY_LAST_PERIODIC_RUN_TIMESTAMP}" into storage: {err}'
                ) from err

    def _cleanup_task_history(self, storage) -> None:
        try:
            config = get_configuration(storage)
        except Exception as err:
            raise RuntimeError(f"unable to get tasks manager configuration: {err}") from err
        limit = config.task_history_limit if config is not None else DEFAULT_TASK_HISTORY_LIMIT

        completed = [
            get_task_from_storage(storage, TaskState.COMPLETED, uuid)
            for uuid in storage.list(task_storage_key_prefix(TaskState.COMPLETED))
        ]
        completed.sort(key=lambda task: task.modified, reverse=True)
        if len(completed) > limit:
            completed = completed[limit:]

        for task in completed:
            storage.delete(task_storage_key(TaskState.COMPLETED, task.uuid))
            storage.delete(task_log_storage_key(task.uuid))
"""A single background worker that runs queued tasks one at a time."""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class SafeBuffer:
    """Byte buffer that can be written and read from several threads."""

    def __init__(self) -> None:
        self._data = bytearray()
        self._lock = threading.Lock()

    def write(self, data: bytes) -> int:
        with self._lock:
            self._data += data
        return len(data)

    def getvalue(self) -> bytes:
        with self._lock:
            return bytes(self._data)


class TaskContext:
    """Cancellation scope with an optional deadline and log buffer, inherited by children."""

    def __init__(
        self,
        parent: TaskContext | None = None,
        *,
        timeout: timedelta | float | None = None,
        buffer: SafeBuffer | None = None,
    ) -> None:
        self._parent = parent
        if buffer is None and parent is not None:
            buffer = parent._buffer
        self._buffer = buffer
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._children: list[TaskContext] = []
        self._timer: threading.Timer | None = None
        if parent is not None:
            parent._add_child(self)
        if timeout is not None and not self._done.is_set():
            seconds = timeout.total_seconds() if isinstance(timeout, timedelta) else float(timeout)
            self._timer = threading.Timer(max(seconds, 0.0), self.cancel)
            self._timer.daemon = True
            self._timer.start()

    def _add_child(self, child: TaskContext) -> None:
        with self._lock:
            if not self._done.is_set():
                self._children.append(child)
                return
        child.cancel()

    def _remove_child(self, child: TaskContext) -> None:
        with self._lock:
            if child in self._children:
                self._children.remove(child)

    @property
    def cancelled(self) -> bool:
        return self._done.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._done.is_set():
                return
            self._done.set()
            children, self._children = self._children, []
        if self._timer is not None:
            self._timer.cancel()
        for child in children:
            child.cancel()
        if self._parent is not None:
            self._parent._remove_child(self)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or ``timeout`` seconds pass; return whether cancelled."""
        return self._done.wait(timeout)

    def log(self, message: str | bytes) -> None:
        data = message.encode() if isinstance(message, str) else bytes(message)
        if self._buffer is not None:
            self._buffer.write(data)
        else:
            logger.info(data.decode(errors="replace"))


@dataclass
class WorkerTask:
    """A unit of work handed to the worker; ``action`` raises to report failure."""

    uuid: str
    action: Callable[[TaskContext], None]
    context: TaskContext = field(default_factory=TaskContext)


class Job:
    """A task being run, with its own cancellation scope and log."""

    def __init__(self, task: WorkerTask) -> None:
        self._buffer = SafeBuffer()
        self.task_uuid = task.uuid
        self.context = TaskContext(task.context, buffer=self._buffer)
        self._action = task.action

    def _run(self) -> None:
        self._action(self.context)

    def log(self) -> bytes:
        return self._buffer.getvalue()


class TaskCallbacks(Protocol):
    """Receiver of task lifecycle notifications."""

    def task_started_callback(self, uuid: str) -> None: ...

    def task_failed_callback(self, uuid: str, log: bytes, error: BaseException) -> None: ...

    def task_succeeded_callback(self, uuid: str, log: bytes) -> None: ...


class Worker:
    """Takes tasks from a queue and runs them one after another until stopped."""

    def __init__(self, task_queue: queue.Queue, callbacks: TaskCallbacks | None, poll_interval: float = 0.05) -> None:
        self._task_queue = task_queue
        self._callbacks = callbacks
        self._poll_interval = poll_interval
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._current_job: Job | None = None

    def start(self) -> None:
        """Process tasks until :meth:`stop` is called; meant to run in its own thread."""
        while not self._stopped.is_set():
            try:
                task = self._task_queue.get(timeout=self._poll_interval)
            except queue.Empty:
                continue
            self._process(task)

    def stop(self) -> None:
        self._stopped.set()

    def _process(self, task: WorkerTask) -> None:
        job = Job(task)
        with self._lock:
            self._current_job = job
        try:
            self._callbacks.task_started_callback(job.task_uuid)
            try:
                job._run()
            except Exception as err:  # noqa: BLE001 - reported through the callback
                self._callbacks.task_failed_callback(job.task_uuid, job.log(), err)
            else:
                self._callbacks.task_succeeded_callback(job.task_uuid, job.log())
        finally:
            with self._lock:
                self._current_job = None

    def hold_running_job_by_task_uuid(self, uuid: str, do: Callable[[Job], None]) -> bool:
        """Call ``do`` with the running job if it belongs to ``uuid``, keeping it current meanwhile."""
        with self._lock:
            if self._current_job is None or self._current_job.task_uuid != uuid:
                return False
            do(self._current_job)
            return True

    def cancel_running_job_by_task_uuid(self, uuid: str) -> bool:
        with self._lock:
            if self._current_job is not None and self._current_job.task_uuid == uuid:
                self._current_job.context.cancel()
                return True
            return False
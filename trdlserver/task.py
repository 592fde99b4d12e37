"""Task records and their movement between queued, running and completed storage."""

from __future__ import annotations

import json
import uuid as uuidlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from trdlserver.storage import storage_entry_json

STORAGE_KEY_PREFIX_QUEUED_TASK = "queued_task/"
STORAGE_KEY_PREFIX_RUNNING_TASK = "running_task/"
STORAGE_KEY_PREFIX_COMPLETED_TASK = "completed_task/"
STORAGE_KEY_PREFIX_TASK_LOG = "task_log/"

_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)


class TaskStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


class TaskState(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"


COMPLETED_TASK_STATUSES = (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELED)

_STATE_PREFIXES = {
    TaskState.QUEUED: STORAGE_KEY_PREFIX_QUEUED_TASK,
    TaskState.RUNNING: STORAGE_KEY_PREFIX_RUNNING_TASK,
    TaskState.COMPLETED: STORAGE_KEY_PREFIX_COMPLETED_TASK,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: str | None) -> datetime:
    return datetime.fromisoformat(value) if value else _ZERO_TIME


def _value(item) -> str:
    return item.value if isinstance(item, Enum) else str(item)


@dataclass
class Task:
    uuid: str
    status: str
    reason: str = ""
    created: datetime = field(default_factory=_now)
    modified: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "uuid": self.uuid,
            "status": self.status,
            "reason": self.reason,
            "created": self.created,
            "modified": self.modified,
        }

    @classmethod
    def from_json(cls, raw: bytes | str) -> Task:
        data = json.loads(raw)
        return cls(
            uuid=data.get("uuid", ""),
            status=data.get("status", ""),
            reason=data.get("reason", ""),
            created=_parse_time(data.get("created")),
            modified=_parse_time(data.get("modified")),
        )


def new_task() -> Task:
    now = _now()
    return Task(uuid=str(uuidlib.uuid4()), status=TaskStatus.QUEUED.value, created=now, modified=now)


def add_new_task_to_storage(storage) -> str:
    """Store a fresh queued task and return its UUID."""
    task = new_task()
    storage.put(storage_entry_json(task_storage_key(TaskState.QUEUED, task.uuid), task))
    return task.uuid


def switch_task_to_running_in_storage(storage, uuid: str) -> None:
    task = get_task_from_storage(storage, TaskState.QUEUED, uuid)
    if task is None:
        raise LookupError(f'queued task "{uuid}" must be in storage')

    task.status = TaskStatus.RUNNING.value
    task.modified = _now()
    storage.put(storage_entry_json(task_storage_key(TaskState.RUNNING, uuid), task))
    storage.delete(task_storage_key(TaskState.QUEUED, uuid))


def switch_task_to_completed_in_storage(storage, status, uuid: str, reason: str = "", log: bytes | None = None) -> None:
    """Move a queued or running task to completed storage, with an optional log."""
    if not is_completed_task_status(status):
        raise ValueError(f'runtime error: task in completed state cannot be with status "{_value(status)}"')

    prev_task: Task | None = None
    prev_state: TaskState | None = None
    for state in (TaskState.RUNNING, TaskState.QUEUED):
        task = get_task_from_storage(storage, state, uuid)
        if task is not None:
            prev_task, prev_state = task, state

    if prev_task is None:
        raise LookupError(f'queued or running task "{uuid}" not found in storage')

    prev_task.status = _value(status)
    prev_task.modified = _now()
    prev_task.reason = reason
    storage.put(storage_entry_json(task_storage_key(task_status_state(status), uuid), prev_task))

    if log:
        storage.put(_log_entry(uuid, log))

    storage.delete(task_storage_key(prev_state, prev_task.uuid))


def _log_entry(uuid: str, log: bytes):
    from trdlserver.storage import StorageEntry

    return StorageEntry(task_log_storage_key(uuid), bytes(log))


def get_task_from_storage(storage, state, uuid: str) -> Task | None:
    entry = storage.get(task_storage_key(state, uuid))
    if entry is None:
        return None
    return Task.from_json(entry.value)


def get_task_log_from_storage(storage, uuid: str) -> bytes | None:
    entry = storage.get(task_log_storage_key(uuid))
    return None if entry is None else entry.value


def task_storage_key(state, uuid: str) -> str:
    return task_storage_key_prefix(state) + uuid


def task_storage_key_prefix(state) -> str:
    try:
        return _STATE_PREFIXES[TaskState(state)]
    except ValueError:
        raise ValueError(f'unexpected task state "{_value(state)}"') from None


def task_status_state(status) -> TaskState:
    if status == TaskStatus.QUEUED:
        return TaskState.QUEUED
    if status == TaskStatus.RUNNING:
        return TaskState.RUNNING
    if is_completed_task_status(status):
        return TaskState.COMPLETED
    raise ValueError(f'unexpected task status "{_value(status)}"')


def is_completed_task_status(status) -> bool:
    return status in COMPLETED_TASK_STATUSES


def task_log_storage_key(uuid: str) -> str:
    return STORAGE_KEY_PREFIX_TASK_LOG + uuid
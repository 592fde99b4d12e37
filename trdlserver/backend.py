"""Request routing for the tasks manager: configuration, task list, status, cancel and log."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Callable

from trdlserver.manager import DEFAULT_TASK_HISTORY_LIMIT, Manager
from trdlserver.storage import Configuration, get_configuration, put_configuration
from trdlserver.task import (
    TaskState,
    get_task_from_storage,
    get_task_log_from_storage,
    task_storage_key_prefix,
)

FIELD_NAME_TASK_TIMEOUT = "task_timeout"
FIELD_NAME_TASK_HISTORY_LIMIT = "task_history_limit"
FIELD_NAME_UUID = "uuid"
FIELD_NAME_LIMIT = "limit"
FIELD_NAME_OFFSET = "offset"

FIELD_DEFAULT_TASK_TIMEOUT = "30m"
FIELD_DEFAULT_TASK_HISTORY_LIMIT = DEFAULT_TASK_HISTORY_LIMIT
FIELD_DEFAULT_LIMIT = 500
FIELD_DEFAULT_OFFSET = 0

_UUID_PATTERN = (
    r"(?P<uuid>(?i:[0-9A-F]{8}-[0-9A-F]{4}-[4][0-9A-F]{3}-[89AB][0-9A-F]{3}-[0-9A-F]{12}))"
)

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


class Operation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    READ = "read"
    DELETE = "delete"
    LIST = "list"


@dataclass
class Response:
    """Result of a handled request."""

    data: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def is_error(self) -> bool:
        return "error" in self.data and len(self.data) == 1


def error_response(message: str) -> Response:
    return Response(data={"error": message})


def _quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def parse_duration(value: Any) -> timedelta:
    """Parse seconds given as a number, or a duration string such as ``"5m0s"`` or ``"300"``."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if not isinstance(value, str):
        raise ValueError(f"invalid duration {value!r}")

    text = value.strip()
    if re.fullmatch(r"[+-]?\d+", text):
        return timedelta(seconds=int(text))

    sign = 1
    body = text
    if body[:1] in "+-" and body:
        sign = -1 if body[0] == "-" else 1
        body = body[1:]
    if body == "0":
        return timedelta(0)
    if not body:
        raise ValueError(f"invalid duration {value!r}")

    seconds = 0.0
    pos = 0
    while pos < len(body):
        match = _DURATION_PART.match(body, pos)
        if match is None:
            raise ValueError(f"invalid duration {value!r}")
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return timedelta(seconds=sign * seconds)


def _to_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f'field "{name}" must be an integer')
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise ValueError(f'field "{name}" must be an integer')


Handler = Callable[[dict, Any, dict], "Response | None"]


class TaskBackend:
    """Handles tasks manager requests against a given storage."""

    def __init__(self, manager: Manager) -> None:
        self.manager = manager
        configure = {
            Operation.CREATE: self._configure_create_or_update,
            Operation.UPDATE: self._configure_create_or_update,
            Operation.READ: self._configure_read,
        }
        self._routes: list[tuple[re.Pattern, dict[Operation, Handler]]] = [
            (re.compile(r"task/configure/?"), configure),
            (re.compile(r"task/?"), {Operation.READ: self._task_list}),
            (re.compile(rf"task/{_UUID_PATTERN}"), {Operation.READ: self._task_status}),
            (
                re.compile(rf"task/{_UUID_PATTERN}/cancel"),
                {Operation.CREATE: self._task_cancel, Operation.UPDATE: self._task_cancel},
            ),
            (re.compile(rf"task/{_UUID_PATTERN}/log"), {Operation.READ: self._task_log_read}),
        ]

    def handle_request(self, operation, path: str, data: dict | None = None, storage=None) -> Response | None:
        """Dispatch a request; raises LookupError or ValueError for unknown paths or operations."""
        op = Operation(operation)
        for pattern, handlers in self._routes:
            match = pattern.fullmatch(path)
            if match is None:
                continue
            handler = handlers.get(op)
            if handler is None:
                raise ValueError(f"unsupported operation {op.value!r} on path {path!r}")
            return handler(match.groupdict(), storage, dict(data or {}))
        raise LookupError(f"unsupported path {path!r}")

    def _configure_create_or_update(self, _params: dict, storage, data: dict) -> None:
        timeout = parse_duration(data.get(FIELD_NAME_TASK_TIMEOUT, FIELD_DEFAULT_TASK_TIMEOUT))
        seconds = int(timeout.total_seconds())
        history_limit = _to_int(
            FIELD_NAME_TASK_HISTORY_LIMIT,
            data.get(FIELD_NAME_TASK_HISTORY_LIMIT, FIELD_DEFAULT_TASK_HISTORY_LIMIT),
        )
        cfg = Configuration(task_timeout=timedelta(seconds=seconds), task_history_limit=history_limit)
        try:
            put_configuration(storage, cfg)
        except Exception as err:
            raise RuntimeError(f"unable to save configuration: {err}") from err
        return None

    def _configure_read(self, _params: dict, storage, _data: dict) -> Response:
        try:
            cfg = get_configuration(storage)
        except Exception as err:
            raise RuntimeError(f"unable to get configuration: {err}") from err
        if cfg is None:
            return error_response("Configuration not found")
        return Response(
            data={
                FIELD_NAME_TASK_TIMEOUT: cfg.task_timeout // timedelta(seconds=1),
                FIELD_NAME_TASK_HISTORY_LIMIT: cfg.task_history_limit,
            }
        )

    def _task_list(self, _params: dict, storage, _data: dict) -> Response:
        keys: list[str] = []
        for state in (TaskState.COMPLETED, TaskState.RUNNING, TaskState.QUEUED):
            prefix = task_storage_key_prefix(state)
            try:
                keys.extend(storage.list(prefix))
            except Exception as err:
                raise RuntimeError(f'unable to list "{prefix}" in storage: {err}') from err
        return Response(data={"keys": keys} if keys else {})

    def _task_status(self, params: dict, storage, _data: dict) -> Response:
        uuid = params[FIELD_NAME_UUID]
        for state in (TaskState.QUEUED, TaskState.RUNNING, TaskState.COMPLETED):
            task = get_task_from_storage(storage, state, uuid)
            if task is not None:
                return Response(data=task.to_dict())
        return error_response(f"Task {_quote(uuid)} not found")

    def _task_cancel(self, params: dict, _storage, _data: dict) -> Response | None:
        uuid = params[FIELD_NAME_UUID]
        if not self.manager.worker.cancel_running_job_by_task_uuid(uuid):
            return Response(warnings=[f"task {_quote(uuid)} not running"])
        return None

    def _task_log_read(self, params: dict, storage, data: dict) -> Response:
        uuid = params[FIELD_NAME_UUID]
        offset = _to_int(FIELD_NAME_OFFSET, data.get(FIELD_NAME_OFFSET, FIELD_DEFAULT_OFFSET))
        limit = _to_int(FIELD_NAME_LIMIT, data.get(FIELD_NAME_LIMIT, FIELD_DEFAULT_LIMIT))

        if offset < 0:
            return error_response(f"Field {_quote(FIELD_NAME_OFFSET)} cannot be negative")
        if limit < 0:
            return error_response(f"Field {_quote(FIELD_NAME_LIMIT)} cannot be negative")

        log = self._find_log(uuid, storage)
        if isinstance(log, Response):
            return log

        if len(log) <= offset:
            log = b""
        elif len(log) - offset < limit or limit == 0:
            log = log[offset:]
        else:
            log = log[offset : offset + limit]

        return Response(data={"result": log.decode("utf-8", errors="replace")})

    def _find_log(self, uuid: str, storage) -> bytes | Response:
        held: list[bytes] = []
        if self.manager.worker.hold_running_job_by_task_uuid(uuid, lambda job: held.append(job.log())):
            return held[0]

        if get_task_from_storage(storage, TaskState.COMPLETED, uuid) is not None:
            try:
                log = get_task_log_from_storage(storage, uuid)
            except Exception as err:
                raise RuntimeError(f'unable to get task log "{uuid}" from storage: {err}') from err
            return log or b""

        if get_task_from_storage(storage, TaskState.QUEUED, uuid) is not None:
            return error_response(f"Task {_quote(uuid)} in queue")

        return error_response(f"Task {_quote(uuid)} not found")
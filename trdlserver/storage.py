"""Key-value storage entries, an in-memory storage and the tasks manager configuration."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

STORAGE_KEY_CONFIGURATION = "tasks_manager_configuration"


@dataclass
class StorageEntry:
    """A single stored value."""

    key: str
    value: bytes

    def decode_json(self) -> Any:
        return json.loads(self.value)


def _json_default(obj: Any) -> Any:
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"object of type {type(obj).__name__} is not JSON serializable")


def storage_entry_json(key: str, value: Any) -> StorageEntry:
    """Build an entry holding ``value`` encoded as JSON."""
    return StorageEntry(key, json.dumps(value, default=_json_default).encode())


class InMemoryStorage:
    """Thread-safe storage that keeps every entry in memory."""

    def __init__(self) -> None:
        self._entries: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> StorageEntry | None:
        with self._lock:
            value = self._entries.get(key)
        return None if value is None else StorageEntry(key, value)

    def put(self, entry: StorageEntry) -> None:
        with self._lock:
            self._entries[entry.key] = bytes(entry.value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def list(self, prefix: str) -> list[str]:
        """Keys under ``prefix``, sorted; deeper keys are folded into ``dir/`` items."""
        with self._lock:
            keys = sorted(self._entries)
        result: list[str] = []
        seen: set[str] = set()
        for key in keys:
            if not key.startswith(prefix):
                continue
            rest = key[len(prefix):]
            separator = rest.find("/")
            item = rest if separator == -1 else rest[: separator + 1]
            if item not in seen:
                seen.add(item)
                result.append(item)
        return result


@dataclass
class Configuration:
    """Tasks manager settings."""

    task_timeout: timedelta = timedelta(0)
    task_history_limit: int = 0


def _to_nanoseconds(duration: timedelta) -> int:
    return duration // timedelta(microseconds=1) * 1000


def get_configuration(storage) -> Configuration | None:
    """Load the configuration, or None if it was never stored."""
    entry = storage.get(STORAGE_KEY_CONFIGURATION)
    if entry is None:
        return None
    data = entry.decode_json() or {}
    return Configuration(
        task_timeout=timedelta(microseconds=int(data.get("task_timeout", 0)) // 1000),
        task_history_limit=int(data.get("task_history_limit", 0)),
    )


def put_configuration(storage, cfg: Configuration) -> None:
    storage.put(
        storage_entry_json(
            STORAGE_KEY_CONFIGURATION,
            {
                "task_timeout": _to_nanoseconds(cfg.task_timeout),
                "task_history_limit": cfg.task_history_limit,
            },
        )
    )
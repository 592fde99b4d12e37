from datetime import timedelta

from trdlserver.storage import (
    STORAGE_KEY_CONFIGURATION,
    Configuration,
    InMemoryStorage,
    StorageEntry,
    get_configuration,
    put_configuration,
    storage_entry_json,
)


def test_put_get_delete():
    storage = InMemoryStorage()
    assert storage.get("k") is None
    storage.put(StorageEntry("k", b"value"))
    assert storage.get("k") == StorageEntry("k", b"value")
    storage.delete("k")
    assert storage.get("k") is None


def test_delete_missing_key_is_harmless():
    storage = InMemoryStorage()
    storage.delete("missing")
    assert storage.list("") == []


def test_list_by_prefix_sorted_and_folds_subdirectories():
    storage = InMemoryStorage()
    for key in ["task/b", "task/a", "task/dir/x", "task/dir/y", "other/z"]:
        storage.put(StorageEntry(key, b""))
    assert storage.list("task/") == ["a", "b", "dir/"]
    assert storage.list("nothing/") == []


def test_storage_entry_json_round_trip():
    value = {"name": "n", "items": [1, 2, 3]}
    entry = storage_entry_json("key", value)
    assert entry.key == "key"
    assert entry.decode_json() == value


def test_configuration_absent():
    assert get_configuration(InMemoryStorage()) is None


def test_configuration_round_trip():
    storage = InMemoryStorage()
    cfg = Configuration(task_timeout=timedelta(hours=50), task_history_limit=1000)
    put_configuration(storage, cfg)
    assert get_configuration(storage) == cfg


def test_configuration_timeout_stored_in_nanoseconds():
    storage = InMemoryStorage()
    put_configuration(storage, Configuration(task_timeout=timedelta(minutes=5), task_history_limit=25))
    data = storage.get(STORAGE_KEY_CONFIGURATION).decode_json()
    assert data == {"task_timeout": 300_000_000_000, "task_history_limit": 25}


def test_configuration_defaults_are_zero():
    storage = InMemoryStorage()
    put_configuration(storage, Configuration(task_history_limit=3))
    loaded = get_configuration(storage)
    assert loaded.task_timeout == timedelta(0)
    assert loaded.task_history_limit == 3
import pytest

from trdlserver.tuf_store import (
    NonAtomicTufStore,
    TargetFileNotFoundError,
    TufRepoPrivKeys,
    compute_metadata_paths,
    compute_target_paths,
    versioned_path,
)


class MemoryFilesystem:
    def __init__(self, files=None):
        self.files = dict(files or {})
        self.fail_reads = False

    def is_file_exist(self, path):
        return path in self.files

    def read_file_stream(self, path, writer):
        if self.fail_reads:
            raise OSError("broken")
        writer.write(self.files[path])

    def read_file_bytes(self, path):
        return self.files[path]

    def write_file_bytes(self, path, data):
        self.files[path] = bytes(data)

    def write_file_stream(self, path, reader):
        self.files[path] = reader.read()


class Stream:
    def __init__(self, data):
        self._data = data

    def read(self, size=-1):
        data, self._data = self._data, b""
        return data


def test_versioned_path():
    assert versioned_path("root.json", 1) == "1.root.json"
    assert versioned_path("dir/root.json", 2) == "dir/2.root.json"


def test_compute_metadata_paths():
    assert compute_metadata_paths(False, "root.json", {"root.json": 4}) == ["root.json", "4.root.json"]
    assert compute_metadata_paths(False, "timestamp.json", {"timestamp.json": 4}) == ["timestamp.json"]
    assert compute_metadata_paths(False, "targets.json", {}) == ["targets.json"]


def test_consistent_snapshot_rejected():
    with pytest.raises(ValueError):
        compute_metadata_paths(True, "root.json", {})
    with pytest.raises(ValueError):
        compute_target_paths(True, "a")
    assert compute_target_paths(False, "a") == ["a"]


def test_get_meta_prefers_staged():
    fs = MemoryFilesystem({"root.json": b"fs-root", "targets.json": b"fs-targets"})
    store = NonAtomicTufStore(None, fs)
    store.set_meta("targets.json", b"staged-targets")
    meta = store.get_meta()
    assert meta == {"root.json": b"fs-root", "targets.json": b"staged-targets"}


def test_stage_and_walk_all_targets():
    fs = MemoryFilesystem()
    store = NonAtomicTufStore(None, fs)
    store.stage_target_file("a/x", Stream(b"xx"))
    store.stage_target_file("b", Stream(b"bbb"))
    assert fs.files["targets/a/x"] == b"xx"

    seen = []
    store.walk_staged_targets([], lambda path, reader: seen.append((path, reader.read())))
    assert seen == [("a/x", b"xx"), ("b", b"bbb")]


def test_walk_selected_targets_and_missing():
    fs = MemoryFilesystem()
    store = NonAtomicTufStore(None, fs)
    store.stage_target_file("a", Stream(b"1"))
    store.stage_target_file("b", Stream(b"2"))

    seen = []
    store.walk_staged_targets(["b"], lambda path, reader: seen.append((path, reader.read())))
    assert seen == [("b", b"2")]

    with pytest.raises(TargetFileNotFoundError) as info:
        store.walk_staged_targets(["missing"], lambda path, reader: None)
    assert info.value.path == "missing"


def test_walk_reports_read_errors():
    fs = MemoryFilesystem()
    store = NonAtomicTufStore(None, fs)
    store.stage_target_file("a", Stream(b"1"))
    fs.fail_reads = True
    with pytest.raises(OSError, match="broken"):
        store.walk_staged_targets([], lambda path, reader: reader.read())


def test_commit_writes_meta_and_resets():
    fs = MemoryFilesystem()
    store = NonAtomicTufStore(None, fs)
    store.set_meta("root.json", b"root")
    store.set_meta("snapshot.json", b"snap")
    store.stage_target_file("a", Stream(b"1"))
    store.commit(False, {"root.json": 2})

    assert fs.files["root.json"] == b"root"
    assert fs.files["2.root.json"] == b"root"
    assert fs.files["snapshot.json"] == b"snap"
    assert "2.snapshot.json" not in fs.files

    seen = []
    store.walk_staged_targets([], lambda path, reader: seen.append(path))
    assert seen == []
    fs.files["snapshot.json"] = b"changed"
    assert store.get_meta()["snapshot.json"] == b"changed"


def test_commit_consistent_snapshot_rejected():
    store = NonAtomicTufStore(None, MemoryFilesystem())
    with pytest.raises(ValueError):
        store.commit(True, {})


def test_signing_keys():
    store = NonAtomicTufStore(TufRepoPrivKeys(root={"k": "r"}), MemoryFilesystem())
    assert store.get_signing_keys("root") == [{"k": "r"}]
    assert store.get_signing_keys("targets") == []
    store.save_private_key("timestamp", {"k": "t"})
    assert store.get_signing_keys("timestamp") == [{"k": "t"}]
    assert store.priv_keys.timestamp == {"k": "t"}


def test_unknown_role():
    store = NonAtomicTufStore(None, MemoryFilesystem())
    with pytest.raises(ValueError):
        store.get_signing_keys("other")
    with pytest.raises(ValueError):
        store.save_private_key("other", {})


def test_clean_not_supported():
    store = NonAtomicTufStore(None, MemoryFilesystem())
    with pytest.raises(RuntimeError):
        store.clean()


def test_priv_keys_round_trip():
    keys = TufRepoPrivKeys(root={"a": 1}, snapshot={"b": 2}, targets=None, timestamp={"c": 3})
    data = keys.to_dict()
    assert set(data) == {"root", "snapshot", "targets", "timestamp"}
    assert TufRepoPrivKeys.from_dict(data) == keys
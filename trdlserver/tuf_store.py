"""A TUF metadata and target store that writes straight into a filesystem without atomicity."""

from __future__ import annotations

import json
import logging
import posixpath
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Iterable, Protocol

from trdlserver.util import buffered_piped_writer_process

logger = logging.getLogger(__name__)

TOP_LEVEL_MANIFESTS = ("root.json", "targets.json", "snapshot.json", "timestamp.json")
ROLES = ("root", "targets", "snapshot", "timestamp")


def _quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


class Filesystem(Protocol):
    """Storage for repository files addressed by slash-separated paths."""

    def is_file_exist(self, path: str) -> bool: ...

    def read_file_stream(self, path: str, writer) -> None: ...

    def read_file_bytes(self, path: str) -> bytes: ...

    def write_file_bytes(self, path: str, data: bytes) -> None: ...

    def write_file_stream(self, path: str, reader: BinaryIO) -> None: ...


class TargetFileNotFoundError(LookupError):
    """Raised when a requested target was not staged."""

    def __init__(self, path: str) -> None:
        super().__init__(f"file not found: {path}")
        self.path = path


@dataclass
class TufRepoPrivKeys:
    """Private keys of the four top-level roles; each key is a JSON-serialisable value."""

    root: Any = None
    snapshot: Any = None
    targets: Any = None
    timestamp: Any = None

    def to_dict(self) -> dict:
        return {
            "root": self.root,
            "snapshot": self.snapshot,
            "targets": self.targets,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> TufRepoPrivKeys:
        return cls(
            root=data.get("root"),
            snapshot=data.get("snapshot"),
            targets=data.get("targets"),
            timestamp=data.get("timestamp"),
        )


def _check_role(role: str) -> None:
    if role not in ROLES:
        raise ValueError(f"unknown role {_quote(role)}")


def _reject_consistent_snapshot(consistent_snapshot: bool) -> None:
    if consistent_snapshot:
        raise ValueError("consistent snapshots are not supported")


def versioned_path(name: str, version: int) -> str:
    """``dir/name`` becomes ``dir/<version>.name``."""
    return posixpath.normpath(
        posixpath.join(posixpath.dirname(name), f"{version}.{posixpath.basename(name)}")
    )


def compute_target_paths(consistent_snapshot: bool, name: str) -> list[str]:
    _reject_consistent_snapshot(consistent_snapshot)
    return [name]


def compute_metadata_paths(consistent_snapshot: bool, name: str, versions: dict[str, int]) -> list[str]:
    """Paths a metadata file is written to; root metadata also gets a versioned copy."""
    _reject_consistent_snapshot(consistent_snapshot)
    paths = [name]
    if name == "root.json":
        paths.append(versioned_path(name, versions.get(name, 0)))
    return paths


class NonAtomicTufStore:
    """Keeps metadata staged in memory and writes targets to the filesystem as they are staged."""

    def __init__(self, priv_keys: TufRepoPrivKeys | None, filesystem: Filesystem) -> None:
        self.priv_keys = priv_keys if priv_keys is not None else TufRepoPrivKeys()
        self.filesystem = filesystem
        self._staged_meta: dict[str, bytes] = {}
        self._staged_files: list[str] = []

    def get_meta(self) -> dict[str, bytes]:
        """Top-level metadata, staged versions first, then what the filesystem holds."""
        meta: dict[str, bytes] = {}
        for name in TOP_LEVEL_MANIFESTS:
            if name in self._staged_meta:
                meta[name] = self._staged_meta[name]
                continue
            logger.debug("NonAtomicTufStore.get_meta %r not found in staged meta", name)

            try:
                exists = self.filesystem.is_file_exist(name)
            except Exception as err:
                raise OSError(f"error checking existance of {_quote(name)}: {err}") from err

            if exists:
                try:
                    meta[name] = self.filesystem.read_file_bytes(name)
                except Exception as err:
                    raise OSError(f"error reading {_quote(name)}: {err}") from err
            else:
                logger.debug("NonAtomicTufStore.get_meta %r not found in the store filesystem", name)
        return meta

    def set_meta(self, name: str, meta: bytes) -> None:
        logger.debug("NonAtomicTufStore.set_meta %r", name)
        self._staged_meta[name] = bytes(meta)

    def _piped_file_reader(self, path: str):
        def produce(writer) -> None:
            try:
                self.filesystem.read_file_stream(path, writer)
            except Exception as err:
                raise OSError(f"error reading file {_quote(path)} stream: {err}") from err
            writer.close()

        return buffered_piped_writer_process(produce)

    def _visit(self, target_path: str, targets_fn: Callable[[str, Any], None]) -> None:
        reader = self._piped_file_reader(posixpath.join("targets", target_path))
        try:
            targets_fn(target_path, reader)
        finally:
            reader.close()

    def walk_staged_targets(
        self, target_paths: Iterable[str] | None, targets_fn: Callable[[str, Any], None]
    ) -> None:
        """Call ``targets_fn(path, reader)`` for the given staged targets, or all of them."""
        target_paths = list(target_paths or [])
        logger.debug("NonAtomicTufStore.walk_staged_targets %r", target_paths)

        if not target_paths:
            for file_path in list(self._staged_files):
                self._visit(file_path, targets_fn)
            return

        for target_path in target_paths:
            if target_path not in self._staged_files:
                raise TargetFileNotFoundError(target_path)
            self._visit(target_path, targets_fn)

    def stage_target_file(self, target_path: str, data: BinaryIO) -> None:
        """Write a target into ``targets/`` right away and remember it as staged."""
        logger.debug("NonAtomicTufStore.stage_target_file %r", target_path)
        try:
            self.filesystem.write_file_stream(posixpath.join("targets", target_path), data)
        except Exception as err:
            raise OSError(
                f"error writing {_quote(target_path)} into the store filesystem: {err}"
            ) from err
        self._staged_files.append(target_path)

    def commit(self, consistent_snapshot: bool, versions: dict[str, int]) -> None:
        """Write staged metadata into the filesystem and forget everything staged."""
        logger.debug("NonAtomicTufStore.commit")
        _reject_consistent_snapshot(consistent_snapshot)

        for name, data in self._staged_meta.items():
            for metadata_path in compute_metadata_paths(consistent_snapshot, name, versions):
                logger.debug("NonAtomicTufStore.commit storing metadata path %r", metadata_path)
                try:
                    self.filesystem.write_file_bytes(metadata_path, data)
                except Exception as err:
                    raise OSError(
                        f"error writing metadata path {_quote(metadata_path)} into the filesystem: {err}"
                    ) from err

        self._staged_files = []
        self._staged_meta = {}

    def get_signing_keys(self, role: str) -> list:
        _check_role(role)
        key = getattr(self.priv_keys, role)
        return [key] if key is not None else []

    def save_private_key(self, role: str, key: Any) -> None:
        _check_role(role)
        setattr(self.priv_keys, role, key)

    def clean(self) -> None:
        raise RuntimeError("cleaning the store is not supported")
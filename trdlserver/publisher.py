"""Publishing releases, channels and files into a TUF repository."""

from __future__ import annotations

import io
import json
import logging
import posixpath
import threading
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Iterable, Protocol

from trdlserver.storage import storage_entry_json
from trdlserver.tuf_store import TufRepoPrivKeys
from trdlserver.util import buffered_piped_writer_process

logger = logging.getLogger(__name__)

STORAGE_KEY_TUF_REPOSITORY_KEYS = "tuf_repository_keys"
STORAGE_KEY_PGP_SIGNING_KEY = "pgp_signing_key"

_ALLOWED_OS = frozenset({"any", "linux", "darwin", "windows"})
_ALLOWED_ARCH = frozenset({"any", "amd64", "arm64"})
_SEPARATOR = "/"
_CHUNK_SIZE = 64 * 1024

Signer = Callable[[BinaryIO], bytes]


def _quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


class IncorrectTargetPathError(ValueError):
    """Raised when a release file path does not start with a known ``<os>-<arch>`` directory."""

    def __init__(self, path: str) -> None:
        super().__init__(
            f"got incorrect target path {_quote(path)}: expected path in format <os>-<arch>/... "
            'where os can be either "any", "linux", "darwin" or "windows", '
            'and arch can be either "any", "amd64" or "arm64"'
        )
        self.path = path


class UninitializedRepositoryKeysError(LookupError):
    """Raised when repository keys are absent from storage and may not be generated."""

    def __init__(self, message: str = "uninitialized repository keys") -> None:
        super().__init__(message)


class RepositoryInterface(Protocol):
    """A TUF repository that targets can be staged into."""

    def init(self) -> None: ...

    def set_priv_keys(self, priv_keys: TufRepoPrivKeys) -> None: ...

    def get_priv_keys(self) -> TufRepoPrivKeys: ...

    def gen_priv_keys(self) -> None: ...

    def rotate_priv_keys(self) -> tuple[bool, TufRepoPrivKeys]: ...

    def update_timestamps(self) -> None: ...

    def stage_target(self, path_inside_targets: str, data: BinaryIO) -> None: ...

    def commit_staged(self) -> None: ...

    def get_targets(self) -> list[str]: ...


@dataclass
class InMemoryFile:
    name: str
    data: bytes


class _TeeReader:
    def __init__(self, source: BinaryIO, sink) -> None:
        self._source = source
        self._sink = sink

    def read(self, size: int = -1) -> bytes:
        data = self._source.read(size)
        if data:
            self._sink.write(data)
        return data


class Publisher:
    """Stages release artifacts with detached signatures and manages repository keys."""

    def __init__(self, signer: Signer | None = None) -> None:
        self.signer = signer
        self._lock = threading.Lock()

    def rotate_repository_keys(self, storage, repository: RepositoryInterface) -> None:
        try:
            updated, priv_keys = repository.rotate_priv_keys()
        except Exception as err:
            raise RuntimeError(f"unable to rotate TUF repository keys: {err}") from err

        if updated:
            self._put_priv_keys(storage, priv_keys)
            logger.info("Successfully rotated repository private keys")

    def update_timestamps(self, storage, repository: RepositoryInterface) -> None:
        repository.update_timestamps()

    def _put_priv_keys(self, storage, priv_keys: TufRepoPrivKeys) -> None:
        key = STORAGE_KEY_TUF_REPOSITORY_KEYS
        try:
            entry = storage_entry_json(key, priv_keys)
        except Exception as err:
            raise RuntimeError(f"error creating storage json entry by key {_quote(key)}: {err}") from err
        try:
            storage.put(entry)
        except Exception as err:
            raise RuntimeError(
                f"error putting private keys json entry by key {_quote(key)} into the storage: {err}"
            ) from err

    def set_repository_keys(self, storage, repository: RepositoryInterface, initialize_keys: bool = False) -> None:
        """Load repository keys from storage, or generate and store them when allowed."""
        key = STORAGE_KEY_TUF_REPOSITORY_KEYS
        try:
            entry = storage.get(key)
        except Exception as err:
            raise RuntimeError(
                f"error getting storage private keys json entry by the key {_quote(key)}: {err}"
            ) from err

        if entry is None:
            if not initialize_keys:
                raise UninitializedRepositoryKeysError()
            logger.debug("Will generate new repository private keys")
            try:
                repository.gen_priv_keys()
            except Exception as err:
                raise RuntimeError(f"error generating repository private keys: {err}") from err
            self._put_priv_keys(storage, repository.get_priv_keys())
            logger.info("Generated new repository private keys")
            return

        try:
            priv_keys = TufRepoPrivKeys.from_dict(entry.decode_json())
        except (ValueError, TypeError, AttributeError) as err:
            raise ValueError(
                f"unable to decode keys json by the {_quote(key)} storage key:\n"
                f"{entry.value.decode(errors='replace')}---\n{err}"
            ) from err

        try:
            repository.set_priv_keys(priv_keys)
        except Exception as err:
            raise RuntimeError(f"unable to set private keys into repository: {err}") from err
        logger.info("Loaded repository private keys from the storage")

    def stage_release_target(
        self, repository: RepositoryInterface, release_name: str, release_file_path: str, data: BinaryIO
    ) -> None:
        """Stage a release file and its detached signature, signing while the file streams."""
        with self._lock:
            parts = split_filepath(posixpath.normpath(release_file_path))
            if not parts:
                raise IncorrectTargetPathError(release_file_path)
            os_and_arch = parts[0].split("-", 1)
            if len(os_and_arch) != 2 or os_and_arch[0] not in _ALLOWED_OS or os_and_arch[1] not in _ALLOWED_ARCH:
                raise IncorrectTargetPathError(release_file_path)

            if self.signer is None:
                raise RuntimeError("uninitialized pgp signing key")
            signer = self.signer

            done = threading.Event()
            outcome: dict[str, Any] = {}

            def produce(writer) -> None:
                try:
                    tee = _TeeReader(data, writer)
                    try:
                        signature = signer(tee)
                    except Exception as err:
                        outcome["error"] = RuntimeError(f"unable to sign {_quote(release_file_path)}: {err}")
                        raise outcome["error"] from err
                    while tee.read(_CHUNK_SIZE):
                        pass
                    try:
                        writer.close()
                    except Exception as err:
                        outcome["error"] = RuntimeError(f"unable to close sign data reader stream: {err}")
                        raise outcome["error"] from err
                    outcome["signature"] = bytes(signature)
                except BrokenPipeError as err:
                    outcome.setdefault("error", RuntimeError(f"unable to close sign data reader stream: {err}"))
                    raise
                finally:
                    done.set()

            reader = buffered_piped_writer_process(produce)
            target_path = posixpath.normpath(posixpath.join("releases", release_name, release_file_path))
            logger.debug("Stage release target %r ...", target_path)
            try:
                repository.stage_target(target_path, reader)
            except Exception as err:
                done.wait()
                if "error" in outcome:
                    raise outcome["error"] from err
                raise RuntimeError(
                    f"unable to stage release target {_quote(target_path)} into the repository: {err}"
                ) from err
            finally:
                reader.close()

            done.wait()
            if "signature" not in outcome:
                raise outcome.get("error") or RuntimeError(f"unable to sign {_quote(release_file_path)}")

            signature_path = posixpath.normpath(
                posixpath.join("signatures", release_name, f"{release_file_path}.sig")
            )
            logger.debug("Stage release target signature %r ...", signature_path)
            try:
                repository.stage_target(signature_path, io.BytesIO(outcome["signature"]))
            except Exception as err:
                raise RuntimeError(
                    f"unable to stage release target signature {_quote(signature_path)} into the repository: {err}"
                ) from err

    def stage_channels_config(self, repository: RepositoryInterface, channels: dict) -> None:
        """Publish ``channels/<group>/<channel>`` files holding each channel's version."""
        with self._lock:
            for group in channels.get("groups") or []:
                for channel in group.get("channels") or []:
                    publish_path = posixpath.normpath(
                        posixpath.join("channels", str(group["name"]), str(channel["name"]))
                    )
                    content = f"{channel['version']}\n".encode()
                    try:
                        repository.stage_target(publish_path, io.BytesIO(content))
                    except Exception as err:
                        raise RuntimeError(f"error publishing {_quote(publish_path)}: {err}") from err

    def stage_in_memory_files(self, repository: RepositoryInterface, files: Iterable[InMemoryFile]) -> None:
        with self._lock:
            for file in files:
                try:
                    repository.stage_target(file.name, io.BytesIO(file.data))
                except Exception as err:
                    raise RuntimeError(f"error publishing {_quote(file.name)}: {err}") from err

    def get_existing_releases(self, repository: RepositoryInterface) -> list[str]:
        """Names of published releases, without a leading ``v``, in first-seen order."""
        try:
            targets = repository.get_targets()
        except Exception as err:
            raise RuntimeError(f"error getting existing targets: {err}") from err

        releases: list[str] = []
        for target in targets:
            if not target.startswith("releases/"):
                continue
            name = target[len("releases/"):].split("/", 1)[0]
            if name.startswith("v"):
                name = name[1:]
            if name not in releases:
                releases.append(name)
        return releases

    def periodic_func(self, storage) -> None:
        with self._lock:
            return None


def index_rune_with_escaping(s: str, r: str) -> int:
    """Index of the first ``r`` in ``s`` that is not preceded by a backslash, or -1."""
    start = 0
    while True:
        end = s.find(r, start)
        if end == -1:
            return -1
        if end > start and s[end - 1] == "\\":
            start = end + len(r)
            continue
        return end


def split_filepath(path: str) -> list[str]:
    """Split a slash-separated path into components, honouring backslash-escaped separators."""
    if _SEPARATOR not in path:
        return [path]

    result: list[str] = []
    start = 0
    empty_end = False
    while start < len(path):
        end = index_rune_with_escaping(path[start:], _SEPARATOR)
        if end == -1:
            empty_end = False
            end = len(path)
        else:
            empty_end = True
            end += start
        result.append(path[start:end])
        start = end + len(_SEPARATOR)

    if empty_end:
        result.append("")
    return result
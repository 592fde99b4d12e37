"""Helpers for end-to-end checks: running commands, fixtures and polling task status."""

from __future__ import annotations

import logging
import os
import secrets
import shutil
import string
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import Iterable, TextIO

from trdlserver.backend import Operation, Response

logger = logging.getLogger(__name__)

TRDL_TEST_BINARY_PATH_ENV = "TRDL_TEST_BINARY_PATH"
TRDL_TEST_COVERAGE_DIR_ENV = "TRDL_TEST_COVERAGE_DIR"
TASK_POLL_INTERVAL = 1.0
TASK_LOG_LIMIT = 1_000_000_000

_ALPHANUMERIC = string.ascii_letters + string.digits


class CommandError(Exception):
    """Raised when a command that had to succeed could not be run or exited with an error."""


def _is_trdl_test_binary_path(path: str) -> bool:
    binary_path = os.environ.get(TRDL_TEST_BINARY_PATH_ENV, "")
    return binary_path != "" and binary_path == path


def run_command_with_options(
    dir: str | os.PathLike | None,
    command: str,
    args: Iterable[str] = (),
    extra_env: Iterable[str] | None = None,
    to_stdin: str = "",
    should_succeed: bool = False,
) -> subprocess.CompletedProcess:
    """Run ``command`` with stdout and stderr combined into ``stdout`` of the result.

    ``extra_env`` holds ``NAME=value`` items added to the current environment.
    With ``should_succeed`` a non-zero exit raises CommandError.
    """
    args = list(args)
    if _is_trdl_test_binary_path(command):
        args = trdl_bin_args(*args)

    env = None
    extra_env = list(extra_env or [])
    if extra_env:
        env = dict(os.environ)
        for item in extra_env:
            name, _, value = item.partition("=")
            env[name] = value

    description = f"{command} {' '.join(args)} (dir: {dir or ''})"
    try:
        result = subprocess.run(
            [command, *args],
            cwd=dir or None,
            env=env,
            input=to_stdin.encode() if to_stdin else None,
            stdin=None if to_stdin else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            check=False,
        )
    except OSError as err:
        raise CommandError(f"{description}: {err}") from err

    logger.debug("%s", result.stdout.decode(errors="replace"))

    if should_succeed and result.returncode != 0:
        raise CommandError(
            f"{description}: exit status {result.returncode}\n"
            f"{result.stdout.decode(errors='replace')}"
        )
    return result


def run_succeed_command(dir, command: str, *args: str) -> None:
    run_command_with_options(dir, command, args, should_succeed=True)


def succeed_command_output_string(dir, command: str, *args: str) -> str:
    return run_command_with_options(dir, command, args, should_succeed=True).stdout.decode()


def copy_in(source_path, destination_path) -> None:
    """Copy a file or a whole directory tree into ``destination_path``."""
    source = Path(source_path)
    destination = Path(destination_path)
    if source.is_dir():
        shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
    else:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)


def get_head_commit(work_tree_dir) -> str:
    return succeed_command_output_string(work_tree_dir, "git", "rev-parse", "HEAD").strip()


def get_random_string(n: int) -> str:
    """Cryptographically random lower-case alphanumeric string of length ``n``."""
    if n < 0:
        raise ValueError("length must not be negative")
    return "".join(secrets.choice(_ALPHANUMERIC) for _ in range(n)).lower()


def get_temp_dir() -> str:
    directory = tempfile.mkdtemp(prefix="trdl-e2e-tests-")
    if sys.platform in ("darwin", "win32"):
        directory = os.path.realpath(directory)
    return directory


def trdl_bin_args(*args: str) -> list[str]:
    """Prefix ``args`` with a coverage profile argument when coverage collection is enabled."""
    result: list[str] = []
    coverage_dir = os.environ.get(TRDL_TEST_COVERAGE_DIR_ENV, "")
    if os.environ.get(TRDL_TEST_BINARY_PATH_ENV, "") and coverage_dir:
        name = f"{time.time_ns()}-{get_random_string(10)}.out"
        result.append(f"-test.coverprofile={os.path.join(coverage_dir, name)}")
    result.extend(args)
    return result


def fixture_path(*args: str) -> str:
    return os.path.join(os.path.abspath("_fixtures"), *args)


def meets_requirement_tools(required_tools: Iterable[str]) -> bool:
    """Report every missing tool and return whether all of them are on PATH."""
    has_requirements = True
    for tool in required_tools:
        if shutil.which(tool) is None:
            print(f"You must have {tool} installed on your PATH")
            has_requirements = False
    return has_requirements


def _request(backend, storage, path: str, data: dict | None = None) -> Response:
    try:
        resp = backend.handle_request(Operation.READ, path, data or {}, storage)
    except Exception as err:
        raise RuntimeError(f"err:{err} resp:None") from err
    if resp is None or resp.is_error():
        raise RuntimeError(f"err:None resp:{resp!r}")
    return resp


def list_tasks(backend, storage) -> list[str]:
    return list(_request(backend, storage, "task").data.get("keys", []))


def get_task_status(backend, storage, uuid: str) -> tuple[str, str]:
    data = _request(backend, storage, f"task/{uuid}").data
    return data["status"], data["reason"]


def get_task_log(backend, storage, uuid: str) -> str:
    return _request(backend, storage, f"task/{uuid}/log", {"limit": TASK_LOG_LIMIT}).data["result"]


def _wait_for_task(backend, storage, uuid: str, out: TextIO | None, final: tuple[str, ...]) -> str:
    while True:
        status, reason = get_task_status(backend, storage, uuid)
        if out is not None:
            out.write(f'Poll task {uuid}: status={status} reason="{reason}"\n')

        if status in final:
            return reason
        if status not in ("QUEUED", "RUNNING"):
            task_log = get_task_log(backend, storage, uuid)
            raise RuntimeError(
                f"got unexpected task {uuid} status {status} reason {reason}:\n{task_log}\n"
            )
        time.sleep(TASK_POLL_INTERVAL)


def wait_for_task_completion(backend, storage, uuid: str, out: TextIO | None = None) -> None:
    _wait_for_task(backend, storage, uuid, out, ("COMPLETED", "FAILED"))


def wait_for_task_success(backend, storage, uuid: str, out: TextIO | None = None) -> None:
    _wait_for_task(backend, storage, uuid, out, ("SUCCEEDED",))


def wait_for_task_failure(backend, storage, uuid: str, out: TextIO | None = None) -> str:
    """Wait until the task fails and return the failure reason."""
    return _wait_for_task(backend, storage, uuid, out, ("FAILED",))
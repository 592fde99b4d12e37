"""Clocks, environment flags, buffered pipes and throughput-logging streams."""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

logger = logging.getLogger(__name__)

PIPE_BUFFER_SIZE = 64 * 1024 * 1024

_FALSE_VALUES = frozenset({"", "0", "false", "FALSE", "no", "NO"})


class SystemClock:
    """Clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def since(self, t: datetime) -> timedelta:
        return self.now() - t


@dataclass
class FixedClock:
    """Clock that always reports the same moment."""

    now_time: datetime

    def now(self) -> datetime:
        return self.now_time

    def since(self, t: datetime) -> timedelta:
        return self.now_time - t


class LogicalError(Exception):
    """An error caused by the request rather than by the server itself."""


def is_env_var_true(env_var_name: str) -> bool:
    """Return False for an unset variable or one of the usual false spellings."""
    return os.environ.get(env_var_name, "") not in _FALSE_VALUES


class _BufferedPipe:
    def __init__(self, capacity: int) -> None:
        self._capacity = capacity
        self._buffer = bytearray()
        self._cond = threading.Condition()
        self._writer_closed = False
        self._reader_closed = False
        self._error: BaseException | None = None

    def write(self, data: bytes) -> int:
        view = memoryview(bytes(data))
        total = len(view)
        with self._cond:
            while view:
                if self._reader_closed or self._writer_closed:
                    raise BrokenPipeError("write on closed pipe")
                room = self._capacity - len(self._buffer)
                if room <= 0:
                    self._cond.wait()
                    continue
                chunk = view[:room]
                self._buffer += chunk
                view = view[len(chunk):]
                self._cond.notify_all()
        return total

    def close_writer(self, error: BaseException | None = None) -> None:
        with self._cond:
            if not self._writer_closed:
                self._writer_closed = True
                self._error = error
            self._cond.notify_all()

    def close_reader(self) -> None:
        with self._cond:
            self._reader_closed = True
            self._cond.notify_all()

    def _take(self, size: int) -> bytes:
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        self._cond.notify_all()
        return data

    def read(self, size: int | None = -1) -> bytes:
        with self._cond:
            if self._reader_closed:
                raise BrokenPipeError("read from closed pipe")
            if size is None or size < 0:
                while not self._writer_closed:
                    if len(self._buffer) >= self._capacity:
                        break
                    self._cond.wait()
                chunks = [self._take(len(self._buffer))]
                while not self._writer_closed:
                    self._cond.wait()
                    chunks.append(self._take(len(self._buffer)))
                chunks.append(self._take(len(self._buffer)))
                if self._error is not None:
                    raise self._error
                return b"".join(chunks)
            if size == 0:
                return b""
            while not self._buffer and not self._writer_closed:
                self._cond.wait()
            if self._buffer:
                return self._take(size)
            if self._error is not None:
                raise self._error
            return b""


class _PipeWriter:
    def __init__(self, pipe: _BufferedPipe) -> None:
        self._pipe = pipe

    def write(self, data: bytes) -> int:
        return self._pipe.write(data)

    def close(self) -> None:
        self._pipe.close_writer()

    def close_with_error(self, error: BaseException) -> None:
        self._pipe.close_writer(error)


class _PipeReader:
    def __init__(self, pipe: _BufferedPipe) -> None:
        self._pipe = pipe

    def read(self, size: int | None = -1) -> bytes:
        return self._pipe.read(size)

    def close(self) -> None:
        self._pipe.close_reader()

    def __enter__(self) -> "_PipeReader":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def buffered_piped_writer_process(f: Callable[[_PipeWriter], None]) -> _PipeReader:
    """Run ``f`` in a background thread writing into a buffered pipe; return its read end.

    ``f`` must close the writer when done. If ``f`` raises, the reader sees that error.
    """
    pipe = _BufferedPipe(PIPE_BUFFER_SIZE)
    writer = _PipeWriter(pipe)

    def run() -> None:
        try:
            f(writer)
        except Exception as exc:  # noqa: BLE001 - handed over to the reader
            writer.close_with_error(exc)

    threading.Thread(target=run, daemon=True).start()
    return _PipeReader(pipe)


class _ThroughputMeter:
    _kind = ""

    def __init__(self, log_name: str, clock=None, log: Callable[[str], None] | None = None) -> None:
        self.log_name = log_name
        self.started_at: datetime | None = None
        self.last_progress_at: datetime | None = None
        self.processed_bytes = 0
        self._clock = clock or SystemClock()
        self._log = log or logger.info

    def _account(self, n: int) -> None:
        now = self._clock.now()
        if self.started_at is None:
            self.started_at = now
        self.processed_bytes += n
        dur_secs = int((now - self.started_at).total_seconds())
        overdue = self.last_progress_at is None or now - self.last_progress_at > timedelta(seconds=1)
        if overdue and dur_secs > 0:
            speed = int(60 * (self.processed_bytes / dur_secs) / 1024.0 / 1024.0)
            self._log(
                f"[{self.log_name}] {self._kind} processed durSecs={dur_secs} "
                f"{self.processed_bytes} bytes, speed {speed} Mb/min"
            )
            self.last_progress_at = now


class ThroughputWriter(_ThroughputMeter):
    """Writer wrapper that periodically logs how much data went through."""

    _kind = "Writer"

    def __init__(self, log_name: str, w, clock=None, log: Callable[[str], None] | None = None) -> None:
        super().__init__(log_name, clock, log)
        self.w = w

    def write(self, data: bytes) -> int:
        self._account(len(data))
        return self.w.write(data)


class ThroughputReader(_ThroughputMeter):
    """Reader wrapper that periodically logs how much data went through."""

    _kind = "Reader"

    def __init__(self, log_name: str, r, clock=None, log: Callable[[str], None] | None = None) -> None:
        super().__init__(log_name, clock, log)
        self.r = r

    def read(self, size: int = -1) -> bytes:
        data = self.r.read(size)
        self._account(len(data))
        return data
import queue
import threading

import pytest

from trdlserver.worker import SafeBuffer, TaskContext, Worker, WorkerTask

WAIT = 5
CONTEXT_CANCELED_ERROR = RuntimeError("no offense, but it's over: context canceled")


class RecordingCallbacks:
    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()

    def task_started_callback(self, uuid):
        with self._lock:
            self.calls.append(("started", uuid))

    def task_failed_callback(self, uuid, log, error):
        with self._lock:
            self.calls.append(("failed", uuid, log, error))

    def task_succeeded_callback(self, uuid, log):
        with self._lock:
            self.calls.append(("succeeded", uuid, log))


class TaskChannels:
    def __init__(self):
        self.started = threading.Event()
        self.messages = queue.Queue()
        self.message_sent = queue.Queue()
        self.done = threading.Event()
        self.completed = threading.Event()

    def action(self, ctx):
        try:
            self.started.set()
            while True:
                try:
                    message = self.messages.get(timeout=0.01)
                except queue.Empty:
                    pass
                else:
                    ctx.log(message)
                    self.message_sent.put(True)
                    continue
                if self.done.is_set():
                    return
                if ctx.cancelled:
                    raise CONTEXT_CANCELED_ERROR
        finally:
            self.completed.set()


def make_task(uuid):
    channels = TaskChannels()
    return channels, WorkerTask(uuid=uuid, action=channels.action)


def start_in_thread(worker):
    thread = threading.Thread(target=worker.start, daemon=True)
    thread.start()
    return thread


def test_worker_stops():
    worker = Worker(queue.Queue(), None, poll_interval=0.01)
    thread = start_in_thread(worker)
    worker.stop()
    thread.join(WAIT)
    assert not thread.is_alive()


@pytest.mark.parametrize(
    "uuid, log, error",
    [("1", b"hello", None), ("2", b"error", RuntimeError("error"))],
    ids=["succeeded", "failed"],
)
def test_task_callbacks(uuid, log, error):
    task_queue = queue.Queue()
    callbacks = RecordingCallbacks()
    worker = Worker(task_queue, callbacks, poll_interval=0.01)
    thread = start_in_thread(worker)

    done = threading.Event()

    def action(ctx):
        try:
            ctx.log(log.decode())
            if error is not None:
                raise error
        finally:
            done.set()

    task_queue.put(WorkerTask(uuid=uuid, action=action))
    assert done.wait(WAIT)
    worker.stop()
    thread.join(WAIT)
    assert not thread.is_alive()

    if error is None:
        assert callbacks.calls == [("started", uuid), ("succeeded", uuid, log)]
    else:
        assert callbacks.calls == [("started", uuid), ("failed", uuid, log, error)]
        assert callbacks.calls[1][3] is error


def test_cancel_running_job_by_task_uuid():
    task_queue = queue.Queue()
    callbacks = RecordingCallbacks()
    worker = Worker(task_queue, callbacks, poll_interval=0.01)

    assert worker.cancel_running_job_by_task_uuid("1") is False

    task1_channels, task1 = make_task("1")
    task_queue.put(task1)
    task2_channels, task2 = make_task("2")
    task_queue.put(task2)

    thread = start_in_thread(worker)
    try:
        assert task1_channels.started.wait(WAIT)
        assert worker.cancel_running_job_by_task_uuid("2") is False
        assert worker.cancel_running_job_by_task_uuid("1") is True
        assert task1_channels.completed.wait(WAIT)
        assert task2_channels.started.wait(WAIT)

        assert callbacks.calls == [
            ("started", "1"),
            ("failed", "1", b"", CONTEXT_CANCELED_ERROR),
            ("started", "2"),
        ]
    finally:
        task2_channels.done.set()
        worker.stop()
        thread.join(WAIT)
    assert not thread.is_alive()


def test_hold_running_job_by_task_uuid():
    task_queue = queue.Queue(maxsize=1)
    callbacks = RecordingCallbacks()
    worker = Worker(task_queue, callbacks, poll_interval=0.01)
    expected_log = b"test"

    assert worker.hold_running_job_by_task_uuid("1", lambda job: None) is False

    channels, task = make_task("1")
    task_queue.put(task)
    thread = start_in_thread(worker)
    assert channels.started.wait(WAIT)

    seen = []

    def inspect(job):
        channels.messages.put(expected_log.decode())
        channels.message_sent.get(timeout=WAIT)
        channels.done.set()
        channels.completed.wait(WAIT)
        seen.append(job.log())

    assert worker.hold_running_job_by_task_uuid("1", inspect) is True
    assert seen == [expected_log]

    worker.stop()
    thread.join(WAIT)
    assert not thread.is_alive()
    assert callbacks.calls == [("started", "1"), ("succeeded", "1", expected_log)]


def test_safe_buffer_concurrent_writes():
    buffer = SafeBuffer()

    def write_many():
        for _ in range(200):
            buffer.write(b"ab")

    threads = [threading.Thread(target=write_many) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    data = buffer.getvalue()
    assert len(data) == 4 * 200 * 2
    assert data.count(b"ab") == 4 * 200


def test_context_cancel_propagates_to_children():
    parent = TaskContext()
    child = TaskContext(parent)
    grandchild = TaskContext(child)
    parent.cancel()
    assert child.cancelled and grandchild.cancelled
    assert grandchild.wait(0) is True


def test_child_cancel_leaves_parent_running():
    parent = TaskContext()
    child = TaskContext(parent)
    child.cancel()
    assert child.cancelled is True
    assert parent.cancelled is False
    assert parent.wait(0.01) is False


def test_child_of_cancelled_parent_starts_cancelled():
    parent = TaskContext()
    parent.cancel()
    assert TaskContext(parent).cancelled is True


def test_context_timeout_cancels():
    ctx = TaskContext(timeout=0.05)
    assert ctx.wait(WAIT) is True


def test_context_log_inherited_buffer():
    buffer = SafeBuffer()
    parent = TaskContext(buffer=buffer)
    child = TaskContext(parent)
    parent.log("hello ")
    child.log("world!")
    assert buffer.getvalue() == b"hello world!"
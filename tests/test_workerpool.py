import json
import logging
import threading
import uuid
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from flowwallet.jobs import JobState, MemoryJobStore
from flowwallet.workerpool import (
    SEND_JOB_STATUS_JOB_TYPE,
    PermanentFailure,
    WorkerPool,
    permanent_failure,
)


class _ListHandler(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.INFO)
        self.records = []

    def emit(self, record):
        self.records.append(record)


def _logger():
    logger = logging.getLogger(f"test.workerpool.{uuid.uuid4()}")
    logger.setLevel(logging.INFO)
    logger.propagate = False
    handler = _ListHandler()
    logger.addHandler(handler)
    return logger, handler


class _Webhook:
    def __init__(self, status=200):
        self.bodies = []
        self.status = status
        hook = self

        class Handler(BaseHTTPRequestHandler):
            def do_POST(self):
                length = int(self.headers.get("Content-Length", 0))
                hook.bodies.append(json.loads(self.rfile.read(length)))
                self.send_response(hook.status)
                self.send_header("Content-Length", "0")
                self.end_headers()

            def log_message(self, *args):
                pass

        self.server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()

    @property
    def url(self):
        host, port = self.server.server_address
        return f"http://{host}:{port}"

    def close(self):
        self.server.shutdown()
        self.server.server_close()


@pytest.fixture
def webhook():
    hook = _Webhook()
    yield hook
    hook.close()


@pytest.fixture
def failing_webhook():
    hook = _Webhook(status=502)
    yield hook
    hook.close()


class _System:
    def __init__(self, halted=False):
        self.halted = halted
        self.paused = threading.Event()

    def is_halted(self):
        return self.halted

    def pause(self):
        self.paused.set()


def _pool(url, **kwargs):
    logger, handler = _logger()
    pool = WorkerPool(MemoryJobStore(), 1, 1, webhook_url=url, webhook_timeout=60,
                      logger=logger, **kwargs)
    return pool, handler


def test_schedule_send_notification():
    pool, handler = _pool("http://localhost")
    called = []

    def send(job):
        job.should_send_notification = False
        called.append(job)

    def work(job):
        job.should_send_notification = True

    pool.register_executor(SEND_JOB_STATUS_JOB_TYPE, send)
    pool.register_executor("TestJobType", work)

    job = pool.create_job("TestJobType", "")
    pool.process(job)
    assert pool.queue_size() == 1

    notification = pool.next_job()
    assert notification.type == "send_job_status"
    pool.process(notification)
    assert len(called) == 1
    assert handler.records == []


def test_valid_job_should_send(webhook):
    pool, handler = _pool(webhook.url)

    def work(job):
        job.should_send_notification = True

    pool.register_executor("TestJobType", work)
    job = pool.create_job("TestJobType", "")
    pool.process(job)
    pool.process(pool.next_job())

    assert len(webhook.bodies) == 1
    assert webhook.bodies[0]["type"] == "TestJobType"
    assert webhook.bodies[0]["state"] == "COMPLETE"
    assert handler.records == []


def test_failed_job_should_send(webhook):
    pool, handler = _pool(webhook.url)

    def work(job):
        job.should_send_notification = True
        raise PermanentFailure()

    pool.register_executor("TestJobType", work)
    job = pool.create_job("TestJobType", "")
    pool.process(job)
    pool.process(pool.next_job())

    assert webhook.bodies[0]["type"] == "TestJobType"
    assert webhook.bodies[0]["state"] == "FAILED"
    assert len(handler.records) > 0


def test_erroring_job_should_not_send():
    pool, _ = _pool("http://localhost", max_job_error_count=1)

    def work(job):
        job.should_send_notification = True
        raise RuntimeError("test error")

    pool.register_executor("TestJobType", work)
    job = pool.create_job("TestJobType", "")
    pool.process(job)

    assert pool.queue_size() == 0
    assert job.state == JobState.ERROR


def test_endpoint_error_leaves_notification_in_error(failing_webhook):
    pool, handler = _pool(failing_webhook.url, max_job_error_count=1)

    def work(job):
        job.should_send_notification = True

    pool.register_executor("TestJobType", work)
    job = pool.create_job("TestJobType", "")
    pool.process(job)

    notification = pool.next_job()
    pool.process(notification)

    assert len(handler.records) == 1
    assert notification.state == JobState.ERROR


def test_all_error_messages_are_stored_and_published(webhook):
    retry_count = 3
    pool, handler = _pool(webhook.url, max_job_error_count=retry_count)
    expected = []

    def work(job):
        job.should_send_notification = True
        if job.exec_count <= retry_count:
            message = f"error message {job.exec_count}"
            expected.append(message)
            raise RuntimeError(message)
        job.result = "done"

    pool.register_executor("TestJobType", work)
    job = pool.create_job("TestJobType", "")
    for _ in range(retry_count + 1):
        pool.process(job)

    pool.process(pool.next_job())

    assert len(handler.records) == retry_count
    assert job.error == ""
    assert job.errors == expected
    assert webhook.bodies[0]["errors"] == expected
    assert webhook.bodies[0]["result"] == "done"


def test_permanent_failure_wraps_message():
    err = permanent_failure(ValueError("boom"))
    assert isinstance(err, PermanentFailure)
    assert str(err) == "permanent failure: boom"


def test_permanent_failure_marks_job_failed_on_first_try():
    pool, _ = _pool(None)

    def work(job):
        raise permanent_failure(ValueError("boom"))

    pool.register_executor("T", work)
    job = pool.create_job("T")
    pool.process(job)
    assert job.state == JobState.FAILED
    assert job.errors == ["permanent failure: boom"]


def test_missing_executor_marks_no_available_workers():
    pool, _ = _pool(None)
    job = pool.create_job("unknown")
    pool.process(job)
    assert pool.store.job(job.id).state == JobState.NO_AVAILABLE_WORKERS


def test_chain_connection_error_is_raised():
    pool, _ = _pool(None)

    def work(job):
        raise ConnectionError("down")

    pool.register_executor("T", work)
    job = pool.create_job("T")
    with pytest.raises(ConnectionError):
        pool.process(job)
    assert pool.store.job(job.id).state == JobState.ACCEPTED


def test_finished_job_is_not_processed_again():
    pool, _ = _pool(None)
    runs = []
    pool.register_executor("T", runs.append)
    job = pool.create_job("T")
    pool.process(job)
    pool.process(job)
    assert len(runs) == 1
    assert job.exec_count == 1


def test_schedule_full_queue_defers_job():
    pool, _ = _pool(None)
    first = pool.create_job("T")
    second = pool.create_job("T")
    pool.schedule(first)
    pool.schedule(second)
    assert pool.queue_size() == 1
    assert second.state == JobState.NO_AVAILABLE_WORKERS
    assert pool.store.job(second.id).state == JobState.NO_AVAILABLE_WORKERS


def test_schedule_unbuffered_without_workers_defers():
    pool = WorkerPool(MemoryJobStore(), 0, 0)
    job = pool.create_job("T")
    pool.schedule(job)
    assert pool.queue_size() == 0
    assert job.state == JobState.NO_AVAILABLE_WORKERS


def test_schedule_when_halted_does_nothing():
    pool, _ = _pool(None, system_service=_System(halted=True))
    job = pool.create_job("T")
    pool.schedule(job)
    assert pool.queue_size() == 0
    assert pool.store.job(job.id).state == JobState.INIT


def test_create_job_stores_attributes():
    pool, _ = _pool(None)
    job = pool.create_job("T", "abc", attributes={"a": 1})
    stored = pool.store.job(job.id)
    assert stored.attributes == {"a": 1}
    assert stored.transaction_id == "abc"
    assert stored.state == JobState.INIT


def test_status_counts_states():
    pool = WorkerPool(MemoryJobStore(), 5, 2)
    pool.register_executor("ok", lambda job: None)
    done = pool.create_job("ok")
    pool.process(done)
    pool.create_job("ok")
    status = pool.status()
    assert status.jobs_completed == 1
    assert status.jobs_init == 1
    assert status.capacity == 5
    assert status.worker_count == 2


def test_invalid_webhook_url():
    with pytest.raises(ValueError):
        WorkerPool(MemoryJobStore(), 1, 1, webhook_url="not a url")


def test_workers_process_scheduled_jobs():
    pool = WorkerPool(MemoryJobStore(), 2, 1, db_job_poll_interval=10)
    done = threading.Event()
    pool.register_executor("T", lambda job: done.set())
    pool.start()
    job = pool.create_job("T")
    pool.schedule(job)
    assert done.wait(2)
    pool.stop(True)
    assert pool.store.job(job.id).state == JobState.COMPLETE


def test_worker_pauses_system_on_connection_error():
    system = _System()
    pool = WorkerPool(MemoryJobStore(), 2, 1, system_service=system,
                      db_job_poll_interval=10)

    def work(job):
        raise ConnectionError("down")

    pool.register_executor("T", work)
    pool.start()
    pool.schedule(pool.create_job("T"))
    assert system.paused.wait(2)
    pool.stop(True)
    assert pool.next_job() is None
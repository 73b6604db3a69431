"""A pool of worker threads that executes persisted jobs."""

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlsplit

from .datastore import parse_list_options
from .errors import is_chain_connection_error
from .jobs import Job, JobQueueStatus, JobState
from .notification import NotificationConfig

SEND_JOB_STATUS_JOB_TYPE = "send_job_status"

DEFAULT_MAX_JOB_ERROR_COUNT = 10
DEFAULT_DB_JOB_POLL_INTERVAL = 30.0
DEFAULT_ACCEPTED_GRACE_PERIOD = 180.0
DEFAULT_RESCHEDULABLE_GRACE_PERIOD = 60.0

Executor = Callable[[Job], None]


class InvalidJobType(Exception):
    """An executor was handed a job of a type it does not handle."""

    def __init__(self, message: str = "invalid job type"):
        super().__init__(message)


class PermanentFailure(Exception):
    """A job failed in a way that retrying cannot fix."""

    def __init__(self, message: str = "permanent failure"):
        super().__init__(message)


def permanent_failure(err: BaseException) -> PermanentFailure:
    """Wrap an error so that the job fails without further retries."""
    failure = PermanentFailure(f"permanent failure: {err}")
    failure.__cause__ = err
    return failure


@dataclass
class WorkerPoolStatus(JobQueueStatus):
    capacity: int = 0
    worker_count: int = 0


class _JobChannel:
    """A bounded queue; with capacity 0 a send only succeeds for a waiting receiver."""

    def __init__(self, capacity: int):
        self._capacity = capacity
        self._items: deque = deque()
        self._cond = threading.Condition()
        self._waiting = 0
        self._closed = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def _has_room(self) -> bool:
        return len(self._items) < self._capacity or self._waiting > len(self._items)

    def put(self, job: Job, stop: threading.Event, block: bool) -> bool:
        with self._cond:
            while True:
                if stop.is_set() or self._closed:
                    return False
                if self._has_room():
                    self._items.append(job)
                    self._cond.notify_all()
                    return True
                if not block:
                    return False
                self._cond.wait(0.1)

    def get(self) -> Optional[Job]:
        with self._cond:
            self._waiting += 1
            try:
                while not self._items and not self._closed:
                    self._cond.wait()
                if self._items:
                    job = self._items.popleft()
                    self._cond.notify_all()
                    return job
                return None
            finally:
                self._waiting -= 1

    def wake(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


def _validated_webhook_url(url: str) -> str:
    parts = urlsplit(url)
    if not (parts.scheme or url.startswith("/")):
        raise ValueError("invalid job status webhook url")
    return url


class WorkerPool:
    """Queues jobs for a fixed number of workers and reschedules stalled ones."""

    def __init__(
        self,
        store,
        capacity: int,
        worker_count: int,
        *,
        webhook_url: Optional[str] = None,
        webhook_timeout: float = 0.0,
        system_service=None,
        logger: Optional[logging.Logger] = None,
        max_job_error_count: int = DEFAULT_MAX_JOB_ERROR_COUNT,
        db_job_poll_interval: float = DEFAULT_DB_JOB_POLL_INTERVAL,
        accepted_grace_period: float = DEFAULT_ACCEPTED_GRACE_PERIOD,
        reschedulable_grace_period: float = DEFAULT_RESCHEDULABLE_GRACE_PERIOD,
    ):
        self.store = store
        self.capacity = capacity
        self.worker_count = worker_count
        self.system_service = system_service
        self.logger = logger or logging.getLogger(__name__)
        self.max_job_error_count = max_job_error_count
        self.db_job_poll_interval = db_job_poll_interval
        self.accepted_grace_period = accepted_grace_period
        self.reschedulable_grace_period = reschedulable_grace_period

        self.notification_config = NotificationConfig()
        if webhook_url:
            self.notification_config = NotificationConfig(
                job_status_webhook_url=_validated_webhook_url(webhook_url),
                job_status_webhook_timeout=webhook_timeout,
            )

        self._executors: Dict[str, Executor] = {}
        self._channel = _JobChannel(capacity)
        self._stop_event = threading.Event()
        self._workers: list = []
        self._started = False

        self.register_executor(SEND_JOB_STATUS_JOB_TYPE, self._execute_send_job_status)
        self.logger.debug(
            "Worker pool created capacity=%d workers=%d", capacity, worker_count
        )

    def _log_prefix(self, job: Job) -> str:
        return f"[job {job.id} type={job.type}]"

    def register_executor(self, job_type: str, executor: Executor) -> None:
        self._executors[job_type] = executor

    def create_job(
        self, job_type: str, transaction_id: str = "", attributes: Any = None
    ) -> Job:
        """Create and store a job ready for scheduling."""
        job = Job(
            type=job_type,
            state=JobState.INIT,
            transaction_id=transaction_id,
            attributes=attributes,
        )
        self.store.insert_job(job)
        return job

    def _system_halted(self) -> bool:
        if self.system_service is not None:
            return bool(self.system_service.is_halted())
        return False

    def schedule(self, job: Job) -> None:
        """Try to queue a job at once; if no worker is free, mark it for later."""
        self.logger.debug("%s Scheduling job", self._log_prefix(job))
        try:
            halted = self._system_halted()
        except Exception as err:
            raise RuntimeError(f"error while getting system settings: {err}") from err
        if halted:
            self.logger.debug("%s System halted", self._log_prefix(job))
            return

        if self._try_enqueue(job, block=False):
            self.logger.debug("%s Successfully scheduled job", self._log_prefix(job))
            return
        job.state = JobState.NO_AVAILABLE_WORKERS
        self.logger.debug("%s No available workers, deferring", self._log_prefix(job))
        self.store.update_job(job)

    def status(self) -> WorkerPoolStatus:
        status = WorkerPoolStatus(capacity=self.capacity, worker_count=self.worker_count)
        fields = {
            JobState.INIT: "jobs_init",
            JobState.NO_AVAILABLE_WORKERS: "jobs_not_accepted",
            JobState.ACCEPTED: "jobs_accepted",
            JobState.ERROR: "jobs_errored",
            JobState.FAILED: "jobs_failed",
            JobState.COMPLETE: "jobs_completed",
        }
        for row in self.store.status():
            name = fields.get(JobState(row.state))
            if name is not None:
                setattr(status, name, row.count)
        return status

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._start_workers()
        self._start_db_job_scheduler()

    def stop(self, wait: bool) -> None:
        self._stop_event.set()
        self._channel.wake()
        # Let the stop signal reach the scheduler before closing the queue.
        time.sleep(0.1)
        self._channel.close()
        if wait:
            for worker in self._workers:
                worker.join()

    def queue_size(self) -> int:
        return len(self._channel)

    def next_job(self) -> Optional[Job]:
        """Take the next queued job, waiting for one; None once the pool is stopped."""
        return self._channel.get()

    def _try_enqueue(self, job: Job, block: bool) -> bool:
        return self._channel.put(job, self._stop_event, block)

    def _accept(self, job: Job) -> bool:
        try:
            self.store.accept_job(job, self.accepted_grace_period)
        except Exception as err:
            self.logger.warning("%s Failed to accept job: %s", self._log_prefix(job), err)
            return False
        return True

    def _start_workers(self) -> None:
        for _ in range(self.worker_count):
            worker = threading.Thread(target=self._work, daemon=True)
            self._workers.append(worker)
            worker.start()

    def _work(self) -> None:
        while True:
            job = self._channel.get()
            if job is None:
                break
            try:
                self.process(job)
            except Exception as err:
                self._handle_critical_error(job, err)

    def _handle_critical_error(self, job: Job, err: Exception) -> None:
        prefix = self._log_prefix(job)
        if not is_chain_connection_error(err):
            self.logger.warning("%s Critical error while processing job: %s", prefix, err)
            return
        if self.system_service is None:
            self.logger.warning("%s Unable to connect to chain: %s", prefix, err)
            return
        self.logger.warning("%s Unable to connect to chain, pausing system: %s", prefix, err)
        try:
            self.system_service.pause()
        except Exception as pause_err:
            self.logger.warning("%s Unable to pause system: %s", prefix, pause_err)

    def _start_db_job_scheduler(self) -> None:
        thread = threading.Thread(target=self._db_job_scheduler, daemon=True)
        thread.start()

    def _db_job_scheduler(self) -> None:
        rest_time = 0.0
        while not self._stop_event.wait(max(rest_time, 0.0)):
            try:
                halted = self._system_halted()
            except Exception as err:
                self.logger.warning("Could not get system settings from DB: %s", err)
                rest_time = self.db_job_poll_interval
                continue
            if halted:
                rest_time = self.db_job_poll_interval
                continue

            begin = time.monotonic()
            try:
                jobs = self.store.schedulable_jobs(
                    self.accepted_grace_period,
                    self.reschedulable_grace_period,
                    parse_list_options(0, 0),
                )
            except Exception as err:
                self.logger.warning("Could not fetch schedulable jobs from DB: %s", err)
                continue

            for job in jobs:
                self._try_enqueue(job, block=True)

            rest_time = self.db_job_poll_interval - (time.monotonic() - begin)

    def process(self, job: Job) -> None:
        """Accept and run a job, recording the outcome.

        Errors that mean the chain cannot be reached and failures to store the
        job are raised; other executor errors are recorded on the job.
        """
        prefix = self._log_prefix(job)
        if not self._accept(job):
            self.logger.info("%s Failed to accept job", prefix)
            return

        executor = self._executors.get(job.type)
        if executor is None:
            self.logger.warning(
                "%s Could not process job, no registered executor for type", prefix
            )
            job.state = JobState.NO_AVAILABLE_WORKERS
            self._update(job)
            return

        try:
            executor(job)
        except Exception as err:
            if is_chain_connection_error(err):
                raise
            if job.exec_count > self.max_job_error_count or isinstance(err, PermanentFailure):
                job.state = JobState.FAILED
            else:
                job.state = JobState.ERROR
            job.error = str(err)
            job.errors.append(str(err))
            self.logger.warning("%s Job execution resulted with error: %s", prefix, err)
        else:
            job.state = JobState.COMPLETE
            job.error = ""

        self._update(job)

        if (
            job.state in (JobState.FAILED, JobState.COMPLETE)
            and job.should_send_notification
            and self.notification_config.should_send_job_status()
        ):
            try:
                self._schedule_job_status_notification(job)
            except Exception as err:
                self.logger.warning(
                    "%s Could not schedule a status update notification for job: %s",
                    prefix,
                    err,
                )

    def _update(self, job: Job) -> None:
        try:
            self.store.update_job(job)
        except Exception as err:
            raise RuntimeError(f"error while updating database entry: {err}") from err

    def _execute_send_job_status(self, job: Job) -> None:
        if job.type != SEND_JOB_STATUS_JOB_TYPE:
            raise InvalidJobType()
        job.should_send_notification = False
        self.notification_config.send_job_status(job.result)

    def _schedule_job_status_notification(self, parent: Job) -> None:
        self.logger.debug("%s Scheduling job status notification", self._log_prefix(parent))
        job = self.create_job(SEND_JOB_STATUS_JOB_TYPE, "")
        job.result = json.dumps(parent.to_json_response())
        self.store.update_job(job)
        self.schedule(job)
"""Job records, an in-memory job store and the read-only job service."""

import copy
import logging
import threading
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .accounts import RecordNotFound
from .datastore import ListOptions, parse_list_options
from .errors import RequestError

log = logging.getLogger(__name__)

NIL_UUID = uuid.UUID(int=0)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _page(items: list, options: ListOptions) -> list:
    if options.limit < 0:
        return items[options.offset:]
    return items[options.offset:options.offset + options.limit]


class JobState(str, Enum):
    INIT = "INIT"
    ACCEPTED = "ACCEPTED"
    NO_AVAILABLE_WORKERS = "NO_AVAILABLE_WORKERS"
    ERROR = "ERROR"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


@dataclass
class Job:
    """A unit of asynchronous work and its outcome."""

    type: str = ""
    state: JobState = JobState.INIT
    id: uuid.UUID = NIL_UUID
    error: str = ""
    errors: List[str] = field(default_factory=list)
    result: str = ""
    transaction_id: str = ""
    exec_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    should_send_notification: bool = False
    attributes: Any = None

    def to_json_response(self) -> Dict[str, Any]:
        """The job as it is shown to API clients and webhooks."""
        return {
            "jobId": str(self.id),
            "type": self.type,
            "state": JobState(self.state).value,
            "error": self.error,
            "errors": list(self.errors),
            "result": self.result,
            "transactionId": self.transaction_id,
            "createdAt": _isoformat(self.created_at),
            "updatedAt": _isoformat(self.updated_at),
        }


@dataclass
class JobQueueStatus:
    jobs_init: int = 0
    jobs_not_accepted: int = 0
    jobs_accepted: int = 0
    jobs_errored: int = 0
    jobs_failed: int = 0
    jobs_completed: int = 0


@dataclass(frozen=True)
class StatusQuery:
    state: JobState
    count: int


def is_acceptable(job: Job, accepted_grace_period: float) -> bool:
    """Tell whether a job may be taken by a worker.

    A job accepted within the grace period (seconds) and a finished job are not.
    """
    threshold = _now() - timedelta(seconds=accepted_grace_period)
    if (
        job.state == JobState.ACCEPTED
        and job.updated_at is not None
        and job.updated_at > threshold
    ):
        return False
    return job.state not in (JobState.COMPLETE, JobState.FAILED)


class MemoryJobStore:
    """Thread-safe job store kept in memory; records are copied in and out."""

    def __init__(self):
        self._jobs: Dict[uuid.UUID, Job] = {}
        self._lock = threading.RLock()

    def jobs(self, options: ListOptions) -> List[Job]:
        with self._lock:
            ordered = sorted(
                self._jobs.values(),
                key=lambda j: j.created_at or datetime.min.replace(tzinfo=timezone.utc),
                reverse=True,
            )
            return [copy.deepcopy(j) for j in _page(ordered, options)]

    def job(self, job_id: uuid.UUID) -> Job:
        with self._lock:
            try:
                return copy.deepcopy(self._jobs[job_id])
            except KeyError:
                raise RecordNotFound() from None

    def insert_job(self, job: Job) -> None:
        with self._lock:
            job.id = uuid.uuid4()
            now = _now()
            if job.created_at is None:
                job.created_at = now
            if job.updated_at is None:
                job.updated_at = now
            self._jobs[job.id] = copy.deepcopy(job)

    def update_job(self, job: Job) -> None:
        with self._lock:
            now = _now()
            if job.created_at is None:
                job.created_at = now
            job.updated_at = now
            self._jobs[job.id] = copy.deepcopy(job)

    def accept_job(self, job: Job, accepted_grace_period: float) -> None:
        """Mark a job accepted and count the execution; raise ValueError if it cannot be."""
        if not is_acceptable(job, accepted_grace_period):
            raise ValueError("error job is not acceptable")
        with self._lock:
            stored = self.job(job.id)
            if not is_acceptable(stored, accepted_grace_period):
                raise ValueError("error job is not acceptable")
            job.state = JobState.ACCEPTED
            job.exec_count = stored.exec_count + 1
            self.update_job(job)

    def schedulable_jobs(
        self,
        accepted_grace_period: float,
        reschedulable_grace_period: float,
        options: ListOptions,
    ) -> List[Job]:
        now = _now()
        accepted_before = now - timedelta(seconds=accepted_grace_period)
        reschedulable_before = now - timedelta(seconds=reschedulable_grace_period)

        def wanted(job: Job) -> bool:
            if job.state in (JobState.INIT, JobState.ACCEPTED):
                return job.updated_at < accepted_before
            if job.state in (JobState.ERROR, JobState.NO_AVAILABLE_WORKERS):
                return job.updated_at < reschedulable_before
            return False

        with self._lock:
            ordered = sorted(
                (j for j in self._jobs.values() if wanted(j)),
                key=lambda j: j.created_at,
                reverse=True,
            )
            return [copy.deepcopy(j) for j in _page(ordered, options)]

    def status(self) -> List[StatusQuery]:
        with self._lock:
            counts = Counter(JobState(j.state) for j in self._jobs.values())
        return [StatusQuery(state, counts[state]) for state in JobState if counts[state]]


class JobService:
    """Read access to jobs for the HTTP layer."""

    def __init__(self, store):
        self.store = store

    def list(self, limit: int, offset: int) -> List[Job]:
        log.debug("List jobs limit=%s offset=%s", limit, offset)
        return self.store.jobs(parse_list_options(limit, offset))

    def details(self, job_id: str) -> Job:
        log.debug("Job details jobID=%s", job_id)
        try:
            parsed = uuid.UUID(job_id)
        except (ValueError, TypeError, AttributeError):
            raise RequestError(400, "invalid job id") from None
        try:
            return self.store.job(parsed)
        except RecordNotFound:
            raise RequestError(404, "job not found") from None
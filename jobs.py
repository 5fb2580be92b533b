import copy
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional


PENDING = "pending"
RUNNING = "running"
COMPLETE = "complete"
FAILED = "failed"

TERMINAL_STATUSES = {COMPLETE, FAILED}

# Allowed forward moves. A pending job may fail directly when cancelled before its worker starts.
_TRANSITIONS = {
    PENDING: {RUNNING, FAILED},
    RUNNING: {COMPLETE, FAILED},
    COMPLETE: set(),
    FAILED: set(),
}


class JobNotFound(KeyError):
    """Unknown job id: either expired or never issued."""


class InvalidTransition(ValueError):
    pass


@dataclass
class Job:
    id: str
    source_url: str
    requested_quality: Optional[str]
    status: str = PENDING
    progress: int = 0
    file_path: Optional[str] = None
    file_name: Optional[str] = None
    error: Optional[str] = None
    title: Optional[str] = None
    bytes_received: int = 0
    total_bytes: Optional[int] = None
    created_at: float = field(default_factory=lambda: time.time())
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobStore:
    """Mapping of job id to Job. Each job has exactly one writer, its worker."""

    def create(self, source_url: str, requested_quality: Optional[str]) -> str:
        raise NotImplementedError

    def get(self, job_id: str) -> Job:
        raise NotImplementedError

    def update(self, job_id: str, **changes) -> Job:
        raise NotImplementedError

    def delete(self, job_id: str) -> Job:
        raise NotImplementedError

    def list_jobs(self) -> List[Job]:
        raise NotImplementedError


class InMemoryJobStore(JobStore):
    """Deleted ids stay blocked from reuse for ``reuse_guard_seconds``; live ids always are."""

    def __init__(self, id_factory=None, reuse_guard_seconds: float = 3600, clock=time.time):
        self._jobs: Dict[str, Job] = {}
        self._retired: Dict[str, float] = {}
        self.reuse_guard_seconds = reuse_guard_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._id_factory = id_factory or (lambda: secrets.token_urlsafe(16))

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def create(self, source_url: str, requested_quality: Optional[str]) -> str:
        with self._lock:
            self._prune_retired()
            job_id = self._id_factory()
            while job_id in self._jobs or job_id in self._retired:
                job_id = self._id_factory()
            self._jobs[job_id] = Job(id=job_id, source_url=source_url, requested_quality=requested_quality)
        return job_id

    def get(self, job_id: str) -> Job:
        with self._lock:
            return copy.copy(self._lookup(job_id))

    def update(self, job_id: str, **changes) -> Job:
        with self._lock:
            job = self._lookup(job_id)
            status = changes.pop("status", None)
            if status is not None and status != job.status:
                if status not in _TRANSITIONS.get(job.status, set()):
                    raise InvalidTransition(f"Job {job_id}: cannot move from {job.status} to {status}")
            elif job.is_terminal and changes:
                raise InvalidTransition(f"Job {job_id} is {job.status} and can no longer change")

            progress = changes.pop("progress", None)
            if progress is not None:
                job.progress = max(job.progress, min(100, int(progress)))

            for name, value in changes.items():
                if not hasattr(job, name) or name == "id":
                    raise AttributeError(f"Job has no writable field {name!r}")
                setattr(job, name, value)
            if status is not None:
                job.status = status
            return copy.copy(job)

    def delete(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.pop(job_id, None)
            if job is not None:
                self._retired[job_id] = self._clock()
        if job is None:
            raise JobNotFound(job_id)
        return job

    def list_jobs(self) -> List[Job]:
        with self._lock:
            return [copy.copy(job) for job in self._jobs.values()]

    def _prune_retired(self) -> None:
        cutoff = self._clock() - self.reuse_guard_seconds
        for job_id, retired_at in list(self._retired.items()):
            if retired_at <= cutoff:
                del self._retired[job_id]

    def _lookup(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

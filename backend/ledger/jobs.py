"""
Import job tracking.

Long imports run in the background and callers poll for the outcome. Jobs
move created -> running -> completed|failed, are visible only to the owner
that submitted them, and terminal jobs are dropped after a TTL.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from .config import settings
from .errors import NotFoundError, ValidationError
from .logs import json_log


class JobState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL = frozenset({JobState.COMPLETED, JobState.FAILED})

_NEXT = {
    JobState.CREATED: {JobState.RUNNING, JobState.FAILED},
    JobState.RUNNING: {JobState.COMPLETED, JobState.FAILED},
}


@dataclass
class ImportJob:
    id: str
    kind: str
    owner: str
    state: JobState = JobState.CREATED
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    result: Optional[dict] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["state"] = self.state.value
        return out


class JobStore:
    """Interface; routers receive one through a dependency."""

    def create(self, kind: str, owner: str) -> ImportJob:
        raise NotImplementedError

    def get(self, job_id: str, owner: str) -> ImportJob:
        raise NotImplementedError

    def start(self, job_id: str) -> ImportJob:
        raise NotImplementedError

    def complete(self, job_id: str, result: dict) -> ImportJob:
        raise NotImplementedError

    def fail(self, job_id: str, error: str) -> ImportJob:
        raise NotImplementedError


class InMemoryJobStore(JobStore):
    def __init__(self, ttl_seconds: Optional[int] = None, clock=time.time):
        self.ttl_seconds = settings.import_job_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._jobs: dict[str, ImportJob] = {}
        self._lock = threading.Lock()

    def _purge(self) -> None:
        now = self._clock()
        for jid in [j.id for j in self._jobs.values() if j.state in TERMINAL and now - j.updated_at > self.ttl_seconds]:
            del self._jobs[jid]

    def _move(self, job_id: str, to: JobState, **changes) -> ImportJob:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"import job {job_id} not found", field="job_id", token=job_id)
            if to not in _NEXT.get(job.state, ()):
                raise ValidationError(f"import job {job_id} cannot move from {job.state.value} to {to.value}", field="state")
            job.state = to
            job.updated_at = self._clock()
            for k, v in changes.items():
                setattr(job, k, v)
        json_log("info", f"ledger.job.{to.value}", job_id=job_id, kind=job.kind, owner=job.owner, error=job.error)
        return job

    def create(self, kind: str, owner: str) -> ImportJob:
        now = self._clock()
        job = ImportJob(id=str(uuid.uuid4()), kind=kind, owner=owner, created_at=now, updated_at=now)
        with self._lock:
            self._purge()
            self._jobs[job.id] = job
        json_log("info", "ledger.job.created", job_id=job.id, kind=kind, owner=owner)
        return job

    def get(self, job_id: str, owner: str) -> ImportJob:
        with self._lock:
            self._purge()
            job = self._jobs.get(job_id)
        # Another owner's job is reported exactly like a missing one.
        if job is None or job.owner != owner:
            raise NotFoundError(f"import job {job_id} not found", field="job_id", token=job_id)
        return job

    def start(self, job_id: str) -> ImportJob:
        return self._move(job_id, JobState.RUNNING)

    def complete(self, job_id: str, result: dict) -> ImportJob:
        return self._move(job_id, JobState.COMPLETED, result=result)

    def fail(self, job_id: str, error: str) -> ImportJob:
        return self._move(job_id, JobState.FAILED, error=error)

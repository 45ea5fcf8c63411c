"""In-memory job table. Jobs do not survive a restart."""

from __future__ import annotations

import logging
import threading

from logsource_retire.domain.errors import NotFound
from logsource_retire.domain.models import Job, JobMode, JobStatus

logger = logging.getLogger(__name__)


class JobTable:
    """Jobs by id plus the current job of each client session.

    Finished jobs beyond ``max_retained`` are pruned oldest first. Running
    and pending jobs are never pruned.
    """

    def __init__(self, max_retained: int = 100) -> None:
        self._max_retained = max_retained
        self._jobs: dict[str, Job] = {}
        self._current: dict[str, str] = {}
        self._lock = threading.Lock()

    @property
    def max_retained(self) -> int:
        return self._max_retained

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    def add(self, job: Job) -> None:
        with self._lock:
            self._jobs[job.job_id] = job
            if job.session_id:
                self._current[job.session_id] = job.job_id
            self._prune_locked()

    def get(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFound(f"Job not found: {job_id}")
        return job

    def list(self) -> list[Job]:
        """Newest first."""
        with self._lock:
            jobs = list(self._jobs.values())
        return sorted(jobs, key=lambda j: j.started_at, reverse=True)

    def current_for(self, session_id: str) -> Job:
        job_id = self._current.get(session_id)
        if job_id is None or job_id not in self._jobs:
            raise NotFound(f"No current job for session {session_id}")
        return self._jobs[job_id]

    def latest(self, mode: JobMode, status: JobStatus | None = None) -> Job | None:
        for job in self.list():
            if job.mode is mode and (status is None or job.status is status):
                return job
        return None

    def _prune_locked(self) -> None:
        finished = [job for job in self._jobs.values() if job.status.is_terminal]
        excess = len(self._jobs) - self._max_retained
        if excess <= 0 or not finished:
            return
        finished.sort(key=lambda j: j.ended_at or j.started_at)
        for job in finished[:excess]:
            del self._jobs[job.job_id]
            for session_id, job_id in list(self._current.items()):
                if job_id == job.job_id:
                    del self._current[session_id]
            logger.debug("Pruned finished job %s", job.job_id)

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace
from threading import RLock

from renderfarm.core.jobs.models import Job, JobStatus


class JobStore:
    """Job records keyed by id, kept in queue order.

    The scheduler is the only writer. Readers always get copies, so a snapshot
    handed to an observer never changes under it.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._order: list[str] = []
        self._lock = RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        with self._lock:
            return job_id in self._jobs

    def put(self, job: Job) -> None:
        with self._lock:
            if job.id not in self._jobs:
                self._order.append(job.id)
            self._jobs[job.id] = job

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return None if job is None else self._copy(job)

    def record(self, job_id: str) -> Job | None:
        """Live record for the writer; never hand this out."""
        with self._lock:
            return self._jobs.get(job_id)

    def delete(self, job_id: str) -> bool:
        with self._lock:
            if self._jobs.pop(job_id, None) is None:
                return False
            self._order.remove(job_id)
            return True

    def list_all(self) -> list[Job]:
        with self._lock:
            return [self._copy(self._jobs[jid]) for jid in self._order]

    def list_by_status(self, *statuses: JobStatus) -> list[Job]:
        wanted = set(statuses)
        with self._lock:
            return [
                self._copy(self._jobs[jid]) for jid in self._order if self._jobs[jid].status in wanted
            ]

    def records(self, statuses: Iterable[JobStatus] | None = None) -> list[Job]:
        """Live records in queue order, optionally filtered by status."""
        wanted = None if statuses is None else set(statuses)
        with self._lock:
            return [
                self._jobs[jid]
                for jid in self._order
                if wanted is None or self._jobs[jid].status in wanted
            ]

    def index_of(self, job_id: str) -> int:
        with self._lock:
            try:
                return self._order.index(job_id)
            except ValueError:
                return -1

    def move(self, job_id: str, delta: int) -> bool:
        """Swap a job with its neighbour ``delta`` (+1/-1) positions away."""
        with self._lock:
            idx = self.index_of(job_id)
            target = idx + delta
            if idx < 0 or target < 0 or target >= len(self._order):
                return False
            self._order[idx], self._order[target] = self._order[target], self._order[idx]
            return True

    def move_to_end(self, job_id: str) -> bool:
        with self._lock:
            if job_id not in self._jobs:
                return False
            self._order.remove(job_id)
            self._order.append(job_id)
            return True

    def _copy(self, job: Job) -> Job:
        return replace(job, output_files=list(job.output_files))

"""Bookkeeping for jobs holding a concurrency slot."""
from __future__ import annotations

from typing import Dict, List, Optional

from scrapequeue.orchestrator.jobs import Job


class ActiveJobSet:
    """A permit ledger keyed by job id.

    ``release`` is idempotent so a slot freed by cancellation is not freed a
    second time when the execution finishes.
    """

    def __init__(self, capacity: int) -> None:
        self._jobs: Dict[str, Job] = {}
        self.resize(capacity)

    def resize(self, capacity: int) -> None:
        """Change the slot count; jobs already holding a slot keep it."""
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._jobs

    @property
    def available(self) -> int:
        return self.capacity - len(self._jobs)

    def try_acquire(self, job: Job) -> bool:
        if job.id in self._jobs:
            return False
        if len(self._jobs) >= self.capacity:
            return False
        self._jobs[job.id] = job
        return True

    def release(self, job_id: str) -> Optional[Job]:
        return self._jobs.pop(job_id, None)

    def snapshot(self) -> List[Job]:
        return list(self._jobs.values())

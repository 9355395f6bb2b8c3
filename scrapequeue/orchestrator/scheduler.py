"""Polling job scheduler with a bounded number of concurrently running jobs.

Each tick selects pending jobs for the free slots, moves them to ``running``
and spawns their execution without awaiting it, so up to ``max_concurrent``
jobs are in flight across ticks. Execution always ends in a terminal status
write and a released slot; nothing raised by a job escapes the tick.
"""
from __future__ import annotations

import asyncio
import contextlib
import functools
from typing import Callable, List, Optional, Protocol, Sequence, Set

import structlog

from scrapequeue.fetch.client import ScrapeTarget, TargetOutcome
from scrapequeue.observability.metrics import MetricsRegistry
from scrapequeue.observability.tracing import clear_job_context, set_job_context, span
from scrapequeue.orchestrator.jobs import Job, JobStatus, utcnow
from scrapequeue.orchestrator.processor import ResultProcessor
from scrapequeue.orchestrator.schedule_loop import run_schedule_loop
from scrapequeue.orchestrator.slots import ActiveJobSet
from scrapequeue.platforms.adapters import PlatformAdapter, get_adapter
from scrapequeue.storage.store import JobStore

LOGGER = structlog.get_logger(__name__)


class BatchClient(Protocol):
    async def batch_scrape(self, targets: Sequence[ScrapeTarget]) -> List[TargetOutcome]: ...


class JobScheduler:
    """Drives pending jobs through ``running`` to a terminal status."""

    def __init__(
        self,
        *,
        store: JobStore,
        client: BatchClient,
        processor: ResultProcessor,
        max_concurrent: int = 5,
        poll_interval: float = 10.0,
        adapter_for: Callable[[str], PlatformAdapter] = get_adapter,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._store = store
        self._client = client
        self._processor = processor
        self._adapter_for = adapter_for
        self._metrics = metrics or MetricsRegistry()
        self.poll_interval = poll_interval
        self.active = ActiveJobSet(max_concurrent)
        self._tasks: Set["asyncio.Task[None]"] = set()
        self._poller: Optional["asyncio.Task[None]"] = None

    @property
    def is_polling(self) -> bool:
        return self._poller is not None and not self._poller.done()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def tick(self) -> List[Job]:
        """Start as many pending jobs as there are free slots; return the jobs started."""
        available = self.active.available
        if available <= 0:
            return []
        try:
            pending = await self._store.select_pending(available)
        except Exception:
            LOGGER.exception("select_pending_failed")
            return []
        started: List[Job] = []
        for job in pending:
            if await self._start_job(job):
                started.append(job)
        if started:
            LOGGER.info("tick_started_jobs", started=len(started), active=len(self.active))
        return started

    def release(self, job_id: str) -> bool:
        """Drop a job from the active set without touching its execution."""
        return self.active.release(job_id) is not None

    async def _start_job(self, job: Job) -> bool:
        if not self.active.try_acquire(job):
            return False
        started_at = utcnow()
        try:
            moved = await self._store.transition(
                job.id,
                to_status=JobStatus.RUNNING,
                from_statuses=(JobStatus.PENDING,),
                started_at=started_at,
            )
        except Exception:
            LOGGER.exception("job_start_failed", job_id=job.id)
            self.active.release(job.id)
            return False
        if not moved:
            LOGGER.info("job_start_skipped", job_id=job.id, reason="no longer pending")
            self.active.release(job.id)
            return False

        job.status = JobStatus.RUNNING
        job.started_at = started_at
        self._metrics.incr("jobs_started")
        LOGGER.info("job_started", job_id=job.id, platform=job.platform, job_type=job.job_type)
        task = asyncio.create_task(self._execute(job), name=f"job-{job.id}")
        self._tasks.add(task)
        task.add_done_callback(functools.partial(self._on_execution_done, job.id))
        return True

    def _on_execution_done(self, job_id: str, task: "asyncio.Task[None]") -> None:
        self._tasks.discard(task)
        self.active.release(job_id)
        if not task.cancelled() and task.exception() is not None:
            LOGGER.error("job_task_crashed", job_id=job_id, error=str(task.exception()))

    async def _execute(self, job: Job) -> None:
        set_job_context(job_id=job.id, project_id=job.project_id, platform=job.platform)
        try:
            with span(name="job_execute"):
                targets = self._adapter_for(job.platform).build_targets(job)
                outcomes = await self._client.batch_scrape(targets)
                if await self._processor.process(job, outcomes) is None:
                    LOGGER.info("job_outcome_discarded", job_id=job.id, reason="no longer running")
                    return
            await self._mark_completed(job)
        except Exception as exc:
            await self._mark_failed(job, exc)
        finally:
            self.active.release(job.id)
            clear_job_context()

    async def _mark_completed(self, job: Job) -> None:
        moved = await self._store.transition(
            job.id,
            to_status=JobStatus.COMPLETED,
            from_statuses=(JobStatus.RUNNING,),
            completed_at=utcnow(),
        )
        if moved:
            self._metrics.incr("jobs_completed")
            LOGGER.info("job_completed", job_id=job.id)
        else:
            LOGGER.info("job_completion_ignored", job_id=job.id, reason="no longer running")

    async def _mark_failed(self, job: Job, exc: Exception) -> None:
        message = str(exc) or exc.__class__.__name__
        try:
            moved = await self._store.transition(
                job.id,
                to_status=JobStatus.FAILED,
                from_statuses=(JobStatus.RUNNING,),
                completed_at=utcnow(),
                error=message,
            )
        except Exception:
            LOGGER.exception("job_failure_not_recorded", job_id=job.id, error=message)
            return
        if moved:
            self._metrics.incr("jobs_failed")
            LOGGER.warning("job_failed", job_id=job.id, error=message, error_type=exc.__class__.__name__)

    async def wait_idle(self) -> None:
        """Wait for every execution spawned so far to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def start(self) -> None:
        """Run the poller in the background at ``poll_interval``."""
        if self.is_polling:
            return
        self._poller = asyncio.create_task(
            run_schedule_loop(self, interval_seconds=self.poll_interval, drain=False),
            name="scheduler-poller",
        )
        LOGGER.info("scheduler_started", interval_seconds=self.poll_interval, max_concurrent=self.active.capacity)

    async def stop(self, *, drain: bool = False) -> None:
        if self._poller is not None:
            self._poller.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._poller
            self._poller = None
            LOGGER.info("scheduler_stopped")
        if drain:
            await self.wait_idle()

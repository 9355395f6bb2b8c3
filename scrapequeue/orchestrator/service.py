"""Job submission and read-only query projections over the job store."""
from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, List, Optional

import pydantic
import structlog

from scrapequeue.errors import JobNotFoundError, ValidationError
from scrapequeue.observability.metrics import MetricsRegistry
from scrapequeue.orchestrator.jobs import Job, JobConfig, JobPriority, JobStatus, Result, ResultStatus, utcnow
from scrapequeue.orchestrator.scheduler import JobScheduler
from scrapequeue.platforms.adapters import get_adapter
from scrapequeue.storage.store import JobStore

LOGGER = structlog.get_logger(__name__)


def _describe(exc: pydantic.ValidationError) -> str:
    return "; ".join(f"{'.'.join(str(part) for part in err['loc']) or 'config'}: {err['msg']}" for err in exc.errors())


class JobService:
    """Creates, cancels and reads jobs.

    ``scheduler`` is optional so read-only tools can use the service without a
    running poller; cancellation then only updates the store.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        scheduler: Optional[JobScheduler] = None,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._metrics = metrics or MetricsRegistry()

    async def create_job(
        self,
        project_id: str,
        platform: str,
        job_type: str,
        config: Optional[Dict[str, Any]],
        priority: str = JobPriority.MEDIUM,
    ) -> Job:
        """Validate a submission and store it as a new pending job."""
        required = {"project_id": project_id, "platform": platform, "job_type": job_type, "config": config}
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ValidationError(f"Missing required job fields: {', '.join(missing)}")
        if priority not in JobPriority.ALL:
            raise ValidationError(f"Invalid priority {priority!r}; expected one of {', '.join(JobPriority.ALL)}")
        try:
            parsed = JobConfig.model_validate(config)
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Invalid job config: {_describe(exc)}") from exc

        job = Job(
            id=str(uuid.uuid4()),
            project_id=project_id,
            platform=platform,
            job_type=job_type,
            config=parsed.model_dump(),
            priority=priority,
            status=JobStatus.PENDING,
            created_at=utcnow(),
        )
        await self._store.insert_job(job)
        self._metrics.incr("jobs_submitted")
        LOGGER.info("job_created", job_id=job.id, platform=platform, job_type=job_type, urls=len(parsed.urls))
        return job

    async def submit_platform_job(
        self,
        project_id: str,
        platform: str,
        job_type: str,
        urls: Iterable[str],
        options: Optional[Dict[str, Any]] = None,
        priority: str = JobPriority.MEDIUM,
    ) -> Job:
        """Validate URLs through the platform adapter, then create the job."""
        adapter = get_adapter(platform)
        requested = list(urls)
        valid = adapter.validate_urls(requested, job_type)
        if not valid:
            raise ValidationError(f"No valid {platform} {job_type} URLs supplied")
        if len(valid) != len(requested):
            LOGGER.warning("urls_dropped", platform=platform, job_type=job_type, dropped=len(requested) - len(valid))
        merged = {**adapter.default_options(job_type), **(options or {})}
        return await self.create_job(project_id, platform, job_type, {"urls": valid, "options": merged}, priority)

    async def cancel_job(self, job_id: str) -> Job:
        """Cancel a pending or running job; terminal jobs are returned unchanged.

        A running job only loses its slot: requests already handed to the gate
        run to completion and their outcome is discarded.
        """
        job = await self.get_job(job_id)
        if job.is_terminal:
            LOGGER.warning("cancel_ignored", job_id=job_id, status=job.status)
            return job
        if self._scheduler is not None and self._scheduler.release(job_id):
            LOGGER.info("active_job_released", job_id=job_id)
        moved = await self._store.transition(
            job_id,
            to_status=JobStatus.CANCELLED,
            from_statuses=(JobStatus.PENDING, JobStatus.RUNNING),
            completed_at=utcnow(),
        )
        if moved:
            self._metrics.incr("jobs_cancelled")
            LOGGER.info("job_cancelled", job_id=job_id)
        else:
            LOGGER.warning("cancel_lost_race", job_id=job_id)
        return await self.get_job(job_id)

    async def get_job(self, job_id: str) -> Job:
        job = await self._store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def get_jobs_by_project(
        self,
        project_id: str,
        *,
        status: Optional[str] = None,
        platform: Optional[str] = None,
        job_type: Optional[str] = None,
    ) -> List[Job]:
        return await self._store.list_jobs(project_id=project_id, status=status, platform=platform, job_type=job_type)

    async def get_job_results(self, job_id: str) -> List[Result]:
        return await self._store.list_results(job_id)

    async def get_project_stats(self, project_id: str) -> Dict[str, Dict[str, int]]:
        job_counts = await self._store.count_jobs_by_status(project_id)
        result_counts = await self._store.count_results_by_status(project_id)
        jobs = {"total": 0, **{status: 0 for status in JobStatus.ALL}}
        for status, count in job_counts.items():
            jobs[status] = count
            jobs["total"] += count
        results = {"total": 0, **{status: 0 for status in ResultStatus.ALL}}
        for status, count in result_counts.items():
            results[status] = count
            results["total"] += count
        return {"jobs": jobs, "results": results}

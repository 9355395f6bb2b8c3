"""Turn batch outcomes into persisted result rows and an archived batch file."""
from __future__ import annotations

from typing import List, Optional, Protocol, Sequence

import orjson
import structlog

from scrapequeue.errors import ProcessingError
from scrapequeue.fetch.client import TargetOutcome
from scrapequeue.observability.metrics import MetricsRegistry
from scrapequeue.orchestrator.jobs import Job, Result, ResultStatus, utcnow
from scrapequeue.storage.archive import ArchiveResult, dataset_path
from scrapequeue.storage.store import JobStore

LOGGER = structlog.get_logger(__name__)


class Archive(Protocol):
    async def put(self, path: str, payload: bytes) -> ArchiveResult: ...


def archive_filename(now=None) -> str:
    stamp = (now or utcnow()).isoformat(timespec="milliseconds").replace(":", "-").replace(".", "-")
    return f"results-{stamp}.json"


def build_results(job: Job, outcomes: Sequence[TargetOutcome]) -> List[Result]:
    """Pair ``job.config.urls[i]`` with ``outcomes[i]``."""
    urls = job.urls
    if len(urls) != len(outcomes):
        raise ProcessingError(f"expected {len(urls)} outcomes for job {job.id}, got {len(outcomes)}")
    created_at = utcnow()
    results: List[Result] = []
    for url, outcome in zip(urls, outcomes):
        if outcome.ok:
            status, data = ResultStatus.SUCCESS, outcome.payload
        else:
            status = ResultStatus.ERROR
            data = {"error": outcome.error, "status_code": outcome.status_code}
        results.append(
            Result(
                job_id=job.id,
                project_id=job.project_id,
                platform=job.platform,
                url=url,
                status=status,
                data=data,
                created_at=created_at,
            )
        )
    return results


class ResultProcessor:
    """Persists result rows (required) and archives the raw batch (best effort)."""

    def __init__(self, *, store: JobStore, archive: Archive, metrics: Optional[MetricsRegistry] = None) -> None:
        self._store = store
        self._archive = archive
        self._metrics = metrics or MetricsRegistry()

    async def process(self, job: Job, outcomes: Sequence[TargetOutcome]) -> Optional[List[Result]]:
        """Persist and archive the batch; return None when the job is no longer running."""
        results = build_results(job, outcomes)
        try:
            persisted = await self._store.insert_results_while_running(job.id, results)
        except Exception as exc:
            raise ProcessingError(f"could not persist {len(results)} results: {exc}") from exc
        if not persisted:
            LOGGER.info("results_discarded", job_id=job.id, total=len(results), reason="job no longer running")
            return None

        successes = sum(1 for result in results if result.status == ResultStatus.SUCCESS)
        self._metrics.incr("results_success", successes)
        self._metrics.incr("results_error", len(results) - successes)

        await self._archive_batch(job, results)
        LOGGER.info("results_processed", job_id=job.id, total=len(results), success=successes)
        return results

    async def _archive_batch(self, job: Job, results: Sequence[Result]) -> None:
        path = dataset_path(job.project_id, job.platform, job.id, archive_filename())
        try:
            payload = orjson.dumps({"results": [result.to_dict() for result in results]}, option=orjson.OPT_INDENT_2)
            outcome = await self._archive.put(path, payload)
        except Exception as exc:
            outcome = ArchiveResult(success=False, path=path, error=str(exc))
        if not outcome.success:
            self._metrics.incr("archive_failures")
            LOGGER.warning("archive_failed", job_id=job.id, path=path, error=outcome.error)

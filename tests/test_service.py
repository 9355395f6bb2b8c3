import asyncio

import pytest

from scrapequeue.errors import JobNotFoundError, ValidationError
from scrapequeue.observability.metrics import MetricsRegistry
from scrapequeue.orchestrator.jobs import JobStatus, Result
from scrapequeue.orchestrator.service import JobService
from scrapequeue.storage.store import JobStore

REDDIT_POST = "https://www.reddit.com/r/python/comments/abc123/some_title/"


def _run_with_service(tmp_path, body):
    async def _run():
        store = JobStore(tmp_path / "jobs.db")
        metrics = MetricsRegistry()
        try:
            return await body(JobService(store=store, metrics=metrics), store, metrics)
        finally:
            store.close()

    return asyncio.run(_run())


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"platform": "", "config": {"urls": ["https://example.com"]}}, "platform"),
        ({"config": None}, "config"),
        ({"config": {"urls": []}}, "Invalid job config"),
        ({"config": {"urls": ["   "]}}, "blank"),
        ({"config": {"urls": ["https://example.com"]}, "priority": "urgent"}, "Invalid priority"),
    ],
)
def test_create_job_rejects_malformed_submissions(tmp_path, kwargs, message):
    async def body(service, store, metrics):
        arguments = {"project_id": "p1", "platform": "generic", "job_type": "page", **kwargs}
        with pytest.raises(ValidationError) as excinfo:
            await service.create_job(**arguments)
        return str(excinfo.value), await store.list_jobs()

    error, stored = _run_with_service(tmp_path, body)
    assert message in error
    assert stored == []


def test_create_job_stores_a_pending_job(tmp_path):
    async def body(service, store, metrics):
        job = await service.create_job("p1", "generic", "page", {"urls": [" https://example.com/a "]}, "high")
        return job, await service.get_job(job.id), metrics

    job, fetched, metrics = _run_with_service(tmp_path, body)
    assert fetched.status == JobStatus.PENDING
    assert fetched.priority == "high"
    assert fetched.urls == ["https://example.com/a"]
    assert fetched.options == {}
    assert fetched.started_at is None
    assert fetched.created_at == job.created_at
    assert metrics.get("jobs_submitted") == 1


def test_unknown_job_raises_not_found(tmp_path):
    async def body(service, store, metrics):
        with pytest.raises(JobNotFoundError) as excinfo:
            await service.get_job("missing")
        with pytest.raises(JobNotFoundError):
            await service.cancel_job("missing")
        return excinfo.value

    error = _run_with_service(tmp_path, body)
    assert error.job_id == "missing"


def test_cancel_is_idempotent_and_terminal_jobs_stay_put(tmp_path):
    async def body(service, store, metrics):
        pending = await service.create_job("p1", "generic", "page", {"urls": ["https://example.com/a"]})
        done = await service.create_job("p1", "generic", "page", {"urls": ["https://example.com/b"]})
        await store.transition(done.id, to_status=JobStatus.RUNNING, from_statuses=(JobStatus.PENDING,))
        await store.transition(done.id, to_status=JobStatus.COMPLETED, from_statuses=(JobStatus.RUNNING,))

        first = await service.cancel_job(pending.id)
        second = await service.cancel_job(pending.id)
        completed = await service.cancel_job(done.id)
        return first, second, completed, metrics

    first, second, completed, metrics = _run_with_service(tmp_path, body)
    assert first.status == JobStatus.CANCELLED
    assert first.completed_at is not None
    assert second.status == JobStatus.CANCELLED
    assert second.completed_at == first.completed_at
    assert completed.status == JobStatus.COMPLETED
    assert metrics.get("jobs_cancelled") == 1


def test_project_queries_and_stats(tmp_path):
    async def body(service, store, metrics):
        first = await service.create_job("p1", "reddit", "post", {"urls": [REDDIT_POST]})
        second = await service.create_job("p1", "generic", "page", {"urls": ["https://example.com/a"]})
        await service.create_job("p2", "generic", "page", {"urls": ["https://example.com/b"]})
        await store.transition(first.id, to_status=JobStatus.FAILED, from_statuses=(JobStatus.PENDING,), error="boom")
        await store.insert_results(
            [
                Result(job_id=second.id, project_id="p1", platform="generic", url="u1", status="success", data={}),
                Result(job_id=second.id, project_id="p1", platform="generic", url="u2", status="error", data={}),
                Result(job_id=second.id, project_id="p1", platform="generic", url="u3", status="success", data={}),
            ]
        )
        return (
            await service.get_jobs_by_project("p1"),
            await service.get_jobs_by_project("p1", status=JobStatus.FAILED),
            await service.get_jobs_by_project("p1", platform="generic"),
            await service.get_job_results(second.id),
            await service.get_project_stats("p1"),
            await service.get_project_stats("empty"),
        )

    everything, failed, generic, results, stats, empty = _run_with_service(tmp_path, body)
    assert len(everything) == 2
    assert [job.platform for job in failed] == ["reddit"]
    assert [job.platform for job in generic] == ["generic"]
    assert [result.url for result in results] == ["u1", "u2", "u3"]
    assert stats == {
        "jobs": {"total": 2, "pending": 1, "running": 0, "completed": 0, "failed": 1, "cancelled": 0},
        "results": {"total": 3, "success": 2, "error": 1},
    }
    assert empty["jobs"]["total"] == 0
    assert empty["results"] == {"total": 0, "success": 0, "error": 0}


def test_submit_platform_job_filters_urls_and_merges_defaults(tmp_path):
    async def body(service, store, metrics):
        return await service.submit_platform_job(
            "p1",
            "reddit",
            "post",
            [REDDIT_POST, "https://example.com/not-reddit", "https://www.reddit.com/r/python/"],
            options={"wait_for": "#custom"},
            priority="low",
        )

    job = _run_with_service(tmp_path, body)
    assert job.urls == [REDDIT_POST]
    assert job.options["wait_for"] == "#custom"
    assert job.options["device_type"] == "desktop"
    assert job.priority == "low"


def test_submit_platform_job_rejects_when_nothing_is_valid(tmp_path):
    async def body(service, store, metrics):
        with pytest.raises(ValidationError) as unsupported:
            await service.submit_platform_job("p1", "amazon", "video", ["https://www.amazon.com/dp/B000"])
        with pytest.raises(ValidationError) as no_urls:
            await service.submit_platform_job("p1", "amazon", "product", ["https://example.com/dp/B000"])
        return str(unsupported.value), str(no_urls.value), await store.list_jobs()

    unsupported, no_urls, stored = _run_with_service(tmp_path, body)
    assert "Unsupported job type" in unsupported
    assert "No valid amazon product URLs" in no_urls
    assert stored == []

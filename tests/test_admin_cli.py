import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from scrapequeue.admin import cli
from scrapequeue.orchestrator.jobs import Job, JobStatus, Result
from scrapequeue.storage.store import JobStore


@pytest.fixture()
def db_path(tmp_path):
    path = tmp_path / "jobs.db"
    now = datetime.now(timezone.utc)

    async def _seed():
        store = JobStore(path)
        jobs = [
            Job(id="a1", project_id="alpha", platform="reddit", job_type="post", config={"urls": ["u"]}, created_at=now),
            Job(id="a2", project_id="alpha", platform="reddit", job_type="post", config={"urls": ["u"]},
                created_at=now - timedelta(hours=1)),
            Job(id="a3", project_id="alpha", platform="amazon", job_type="product", config={"urls": ["u"]},
                created_at=now - timedelta(days=30)),
            Job(id="b1", project_id="beta", platform="tiktok", job_type="video", config={"urls": ["u"]},
                created_at=now - timedelta(minutes=5)),
        ]
        for job in jobs:
            await store.insert_job(job)
        for job_id, error in (("a1", "timeout"), ("a2", "timeout"), ("a3", "old failure"), ("b1", "blocked")):
            await store.transition(job_id, to_status=JobStatus.FAILED, from_statuses=(JobStatus.PENDING,), error=error)
        await store.insert_results(
            [Result(job_id="a1", project_id="alpha", platform="reddit", url="u", status="error", data={})]
        )
        store.close()

    asyncio.run(_seed())
    return path


def test_status_summarises_each_project(db_path, capsys):
    cli.main(["status", "--db", str(db_path)])
    summary = json.loads(capsys.readouterr().out)
    assert [row["project_id"] for row in summary] == ["alpha", "beta"]
    alpha = summary[0]
    assert alpha["jobs"]["total"] == 3
    assert alpha["jobs"]["failed"] == 3
    assert alpha["results"]["error"] == 1
    assert datetime.fromisoformat(alpha["last_job_at"]) > datetime.now(timezone.utc) - timedelta(minutes=1)


def test_inspect_failures_counts_recent_errors(db_path, capsys):
    cli.main(["inspect-failures", "--db", str(db_path), "--last", "7"])
    assert json.loads(capsys.readouterr().out) == {"timeout": 2, "blocked": 1}

    cli.main(["inspect-failures", "--db", str(db_path), "--project", "alpha", "--last", "60"])
    assert json.loads(capsys.readouterr().out) == {"timeout": 2, "old failure": 1}


def test_explain_reports_matching_adapter(capsys):
    cli.main(["explain", "--url", "https://www.tiktok.com/@creator/video/123"])
    explanation = json.loads(capsys.readouterr().out)
    assert explanation["platform"] == "tiktok"
    assert explanation["job_types"] == ["video"]
    assert explanation["default_options"]["video"]["device_type"] == "mobile"

    cli.main(["explain", "--url", "https://example.com/"])
    assert json.loads(capsys.readouterr().out) == {"url": "https://example.com/", "matched": False}

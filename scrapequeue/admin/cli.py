"""Administrative CLI utilities."""
from __future__ import annotations

import argparse
import asyncio
import json
from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

from scrapequeue.observability.log import configure_logging
from scrapequeue.orchestrator.jobs import JobStatus
from scrapequeue.orchestrator.service import JobService
from scrapequeue.platforms.adapters import match_adapter
from scrapequeue.storage.store import JobStore

DEFAULT_DB = "data/db/jobs.db"


def _open_service(db_path: str) -> tuple[JobStore, JobService]:
    store = JobStore(Path(db_path))
    return store, JobService(store=store)


async def _project_summaries(service: JobService, store: JobStore) -> List[Dict[str, object]]:
    jobs = await store.list_jobs()
    last_seen: Dict[str, str] = {}
    for job in jobs:
        last_seen.setdefault(job.project_id, job.created_at.isoformat())
    summary = []
    for project_id in sorted(last_seen):
        stats = await service.get_project_stats(project_id)
        summary.append({"project_id": project_id, "last_job_at": last_seen[project_id], **stats})
    return summary


def cmd_status(args: argparse.Namespace) -> None:
    store, service = _open_service(args.db)
    try:
        summary = asyncio.run(_project_summaries(service, store))
    finally:
        store.close()
    print(json.dumps(summary, indent=2))


async def _failure_reasons(store: JobStore, *, project_id: Optional[str], days: int) -> Dict[str, int]:
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    failed = await store.list_jobs(project_id=project_id, status=JobStatus.FAILED, since=cutoff)
    counter: Counter[str] = Counter(job.error or "unknown" for job in failed)
    return dict(counter.most_common())


def cmd_failures(args: argparse.Namespace) -> None:
    store = JobStore(Path(args.db))
    try:
        reasons = asyncio.run(_failure_reasons(store, project_id=args.project, days=args.last))
    finally:
        store.close()
    print(json.dumps(reasons, indent=2))


def cmd_explain(args: argparse.Namespace) -> None:
    url = args.url
    adapter = match_adapter(url)
    if adapter is None:
        print(json.dumps({"url": url, "matched": False}))
        return
    valid_types = [job_type for job_type in adapter.job_types if adapter.is_valid_url(url, job_type)]
    explanation = {
        "url": url,
        "matched": True,
        "platform": adapter.name,
        "job_types": valid_types,
        "default_options": {job_type: adapter.default_options(job_type) for job_type in valid_types},
    }
    print(json.dumps(explanation, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="scrapequeue.admin.cli", description="Administration commands")
    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Show per-project job and result counts")
    status.add_argument("--db", default=DEFAULT_DB)

    failures = sub.add_parser("inspect-failures", help="Summarise error messages of failed jobs")
    failures.add_argument("--db", default=DEFAULT_DB)
    failures.add_argument("--project")
    failures.add_argument("--last", type=int, default=7, help="Lookback window in days")

    explain = sub.add_parser("explain", help="Show which platform adapter handles a URL")
    explain.add_argument("--url", required=True)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    configure_logging(Path("config/logging.yaml"))
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "status":
        cmd_status(args)
        return
    if args.command == "inspect-failures":
        cmd_failures(args)
        return
    if args.command == "explain":
        cmd_explain(args)
        return


if __name__ == "__main__":
    main()

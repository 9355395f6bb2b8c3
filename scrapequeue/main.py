"""Command-line entrypoints for the scrape job scheduler."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, List, Optional

import orjson
from dotenv import load_dotenv

from scrapequeue.config import Settings, load_settings
from scrapequeue.errors import ScrapeQueueError
from scrapequeue.fetch.client import ScrapeApiClient
from scrapequeue.fetch.gate import ThrottledGate
from scrapequeue.observability.log import configure_logging
from scrapequeue.observability.metrics import MetricsRegistry, record_duration
from scrapequeue.orchestrator.jobs import JobPriority, JobStatus
from scrapequeue.orchestrator.processor import ResultProcessor
from scrapequeue.orchestrator.schedule_loop import run_schedule_loop
from scrapequeue.orchestrator.scheduler import JobScheduler
from scrapequeue.orchestrator.service import JobService
from scrapequeue.storage.archive import LocalArchive
from scrapequeue.storage.layout import DataLayout
from scrapequeue.storage.store import JobStore

DEFAULT_SETTINGS = Path("config/settings.toml")
DEFAULT_LOGGING = Path("config/logging.yaml")


@dataclass
class Runtime:
    """Explicitly constructed components shared by one process."""

    settings: Settings
    layout: DataLayout
    metrics: MetricsRegistry
    store: JobStore
    client: ScrapeApiClient
    scheduler: JobScheduler
    service: JobService


@contextlib.asynccontextmanager
async def build_runtime(settings: Settings, *, metrics: Optional[MetricsRegistry] = None) -> AsyncIterator[Runtime]:
    """Wire gate, client, store, archive, processor, scheduler and service once."""
    metrics = metrics or MetricsRegistry()
    layout = DataLayout(root=settings.storage.data_root)
    store = JobStore(layout.store_path())
    gate = ThrottledGate(
        max_per_window=settings.gate.max_per_window,
        window_seconds=settings.gate.window_seconds,
        max_concurrent_dispatch=settings.gate.max_concurrent_dispatch,
        metrics=metrics,
    )
    client = ScrapeApiClient.from_settings(settings.client, gate=gate, metrics=metrics)
    processor = ResultProcessor(store=store, archive=LocalArchive(layout.archive), metrics=metrics)
    scheduler = JobScheduler(
        store=store,
        client=client,
        processor=processor,
        max_concurrent=settings.scheduler.max_concurrent,
        poll_interval=settings.scheduler.poll_interval_seconds,
        metrics=metrics,
    )
    service = JobService(store=store, scheduler=scheduler, metrics=metrics)
    try:
        yield Runtime(
            settings=settings,
            layout=layout,
            metrics=metrics,
            store=store,
            client=client,
            scheduler=scheduler,
            service=service,
        )
    finally:
        await scheduler.stop()
        await client.aclose()
        store.close()


def _emit(payload: Any) -> None:
    print(orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode())


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value}")
    return number


def _positive_float(value: str) -> float:
    number = float(value)
    if number <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive number, got {value}")
    return number


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="scrapequeue", description="Scrape job scheduler")
    parser.add_argument("--config", default=str(DEFAULT_SETTINGS), help="Path to settings TOML")
    sub = parser.add_subparsers(dest="command", required=True)

    submit = sub.add_parser("submit", help="Submit a new scrape job")
    submit.add_argument("--project", required=True, help="Owning project ID")
    submit.add_argument("--platform", required=True, help="Platform identifier (amazon, reddit, ...)")
    submit.add_argument("--job-type", required=True, help="Job type understood by the platform adapter")
    submit.add_argument("--url", action="append", default=[], dest="urls", help="Target URL (repeatable)")
    submit.add_argument("--options", default="{}", help="Scrape options as a JSON object")
    submit.add_argument("--priority", default=JobPriority.MEDIUM, choices=JobPriority.ALL)
    submit.add_argument("--no-validate", action="store_true", help="Skip platform URL validation")

    run = sub.add_parser("run", help="Run the scheduler poller")
    run.add_argument("--ticks", type=int, help="Number of polls before exiting (default: run forever)")
    run.add_argument("--interval", type=_positive_float, help="Seconds between polls")
    run.add_argument("--max-concurrent", type=_positive_int, help="Override the concurrent job limit")

    job = sub.add_parser("job", help="Show a job")
    job.add_argument("job_id")

    jobs = sub.add_parser("jobs", help="List jobs for a project")
    jobs.add_argument("--project", required=True)
    jobs.add_argument("--status", choices=JobStatus.ALL)
    jobs.add_argument("--platform")
    jobs.add_argument("--job-type")

    results = sub.add_parser("results", help="Show results for a job")
    results.add_argument("job_id")

    stats = sub.add_parser("stats", help="Job and result counts for a project")
    stats.add_argument("--project", required=True)

    cancel = sub.add_parser("cancel", help="Cancel a pending or running job")
    cancel.add_argument("job_id")

    return parser


async def _submit(runtime: Runtime, args: argparse.Namespace) -> None:
    try:
        options = orjson.loads(args.options)
    except orjson.JSONDecodeError as exc:
        raise SystemExit(f"--options is not valid JSON: {exc}")
    if not isinstance(options, dict):
        raise SystemExit("--options must be a JSON object")
    if args.no_validate:
        job = await runtime.service.create_job(
            args.project,
            args.platform,
            args.job_type,
            {"urls": args.urls, "options": options},
            args.priority,
        )
    else:
        job = await runtime.service.submit_platform_job(
            args.project,
            args.platform,
            args.job_type,
            args.urls,
            options,
            args.priority,
        )
    _emit(job.to_dict())


async def _run(runtime: Runtime, args: argparse.Namespace) -> None:
    scheduler = runtime.scheduler
    if args.max_concurrent is not None:
        scheduler.active.resize(args.max_concurrent)
    interval = args.interval if args.interval is not None else scheduler.poll_interval
    run_id = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    try:
        with record_duration(runtime.metrics, "run_duration_ms"):
            started = await run_schedule_loop(scheduler, interval_seconds=interval, ticks=args.ticks)
        _emit({"run_id": run_id, "jobs_started": started, "metrics": runtime.metrics.snapshot()})
    finally:
        runtime.metrics.export(path=runtime.layout.metrics / f"run_{run_id}.json", run_id=run_id)


async def dispatch(args: argparse.Namespace, settings: Settings) -> None:
    """Execute one CLI command against a freshly built runtime."""
    async with build_runtime(settings) as runtime:
        service = runtime.service
        if args.command == "submit":
            await _submit(runtime, args)
        elif args.command == "run":
            await _run(runtime, args)
        elif args.command == "job":
            _emit((await service.get_job(args.job_id)).to_dict())
        elif args.command == "jobs":
            found = await service.get_jobs_by_project(
                args.project,
                status=args.status,
                platform=args.platform,
                job_type=args.job_type,
            )
            _emit([job.to_dict() for job in found])
        elif args.command == "results":
            _emit([result.to_dict() for result in await service.get_job_results(args.job_id)])
        elif args.command == "stats":
            _emit(await service.get_project_stats(args.project))
        elif args.command == "cancel":
            _emit((await service.cancel_job(args.job_id)).to_dict())


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging(DEFAULT_LOGGING)
    settings = load_settings(Path(args.config))
    try:
        asyncio.run(dispatch(args, settings))
    except ScrapeQueueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(1)
    except KeyboardInterrupt:
        raise SystemExit(130)


if __name__ == "__main__":
    main()

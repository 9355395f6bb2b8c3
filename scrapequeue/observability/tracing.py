"""Tracing helpers for request attempts and job executions."""
from __future__ import annotations

import contextlib
import time
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars

_JOB_KEYS = ("job_id", "project_id", "platform")


def _logger() -> structlog.stdlib.BoundLogger:
    return structlog.get_logger("scrapequeue.trace")


def set_job_context(*, job_id: str, project_id: str, platform: str) -> None:
    bind_contextvars(job_id=job_id, project_id=project_id, platform=platform)
    _logger().debug("trace_context")


def clear_job_context() -> None:
    unbind_contextvars(*_JOB_KEYS)


@contextlib.contextmanager
def span(*, name: str, url: Optional[str] = None) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        _logger().info("trace_span", span=name, url=url, elapsed_ms=elapsed_ms)


def log_attempt(*, method: str, endpoint: str, attempt: int, max_attempts: int) -> None:
    _logger().debug("request_attempt", method=method, endpoint=endpoint, attempt=attempt, max_attempts=max_attempts)


def log_retry(attempt: int, *, endpoint: str, reason: str, delay: float, classification: str) -> None:
    _logger().warning(
        "request_retry",
        attempt=attempt,
        endpoint=endpoint,
        reason=reason,
        delay_seconds=delay,
        classification=classification,
    )


def log_request_result(*, method: str, endpoint: str, status: Optional[int], elapsed_ms: int) -> None:
    _logger().info(
        "request_result",
        method=method,
        endpoint=endpoint,
        status=status,
        elapsed_ms=elapsed_ms,
    )

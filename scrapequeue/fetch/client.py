"""Rate-limited client for the upstream scrape API with classified retries."""
from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog

from scrapequeue.config import ClientSettings
from scrapequeue.errors import PermanentError, TransientError, UpstreamError
from scrapequeue.fetch.gate import ThrottledGate
from scrapequeue.fetch.mock import MOCK_STATUS_OPTION, MockUpstream
from scrapequeue.fetch.retry import Sleep, attempt, linear_backoff
from scrapequeue.observability.metrics import MetricsRegistry
from scrapequeue.observability.tracing import log_attempt, log_request_result, log_retry

LOGGER = structlog.get_logger(__name__)

DEFAULT_SCRAPE_OPTIONS: Dict[str, Any] = {
    "headless": True,
    "geo": "nl",
    "locale": "nl-NL",
    "device_type": "desktop",
    "wait_for": "#content",
    "timeout": 30000,
    "proxy": None,
    "javascript": True,
    "cookies": [],
    "headers": {},
    "screenshot": False,
    "html": True,
}


@dataclass(slots=True)
class ScrapeTarget:
    """A single per-target request inside a batch."""

    url: str
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TargetOutcome:
    """Payload or error for one target; batches keep input order."""

    url: str
    payload: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def is_retryable(exc: Exception) -> bool:
    return isinstance(exc, TransientError)


def error_for_response(response: httpx.Response, *, method: str, endpoint: str) -> UpstreamError:
    """Map a non-2xx response onto the transient/permanent taxonomy."""
    status = response.status_code
    detail = response.text[:200] if response.content else response.reason_phrase
    message = f"{method} {endpoint} returned {status}: {detail}"
    if status >= 500 or status == httpx.codes.TOO_MANY_REQUESTS:
        return TransientError(message, status_code=status, endpoint=endpoint)
    return PermanentError(message, status_code=status, endpoint=endpoint)


def _outcome_for(target: ScrapeTarget, entry: Any) -> TargetOutcome:
    if isinstance(entry, dict) and entry.get("error"):
        status_code = entry.get("status_code")
        return TargetOutcome(
            url=target.url,
            error=str(entry["error"]),
            status_code=int(status_code) if status_code is not None else None,
        )
    return TargetOutcome(url=target.url, payload=entry)


class ScrapeApiClient:
    """Builds upstream requests and executes them through the throttled gate."""

    def __init__(
        self,
        *,
        gate: ThrottledGate,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        max_retries: int = 3,
        base_retry_delay: float = 2.0,
        metrics: Optional[MetricsRegistry] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._gate = gate
        self._metrics = metrics or MetricsRegistry()
        self._max_retries = max_retries
        self._backoff = linear_backoff(base_retry_delay)
        self._sleep = sleep
        self.use_mock = not api_key
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        elif transport is None:
            LOGGER.warning("upstream_mock_enabled", reason="no api key configured")
            transport = httpx.MockTransport(MockUpstream(base_url).handle)
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings,
        *,
        gate: ThrottledGate,
        metrics: Optional[MetricsRegistry] = None,
    ) -> "ScrapeApiClient":
        return cls(
            gate=gate,
            base_url=settings.base_url,
            api_key=settings.api_key,
            timeout=settings.timeout_seconds,
            max_retries=settings.max_retries,
            base_retry_delay=settings.base_retry_delay_seconds,
            metrics=metrics,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ScrapeApiClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def _send_once(
        self,
        method: str,
        endpoint: str,
        payload: Optional[Dict[str, Any]],
        params: Optional[Dict[str, Any]],
    ) -> Any:
        start = time.perf_counter()
        try:
            response = await self._client.request(method, endpoint, json=payload, params=params)
        except httpx.TransportError as exc:
            self._metrics.incr("network_errors")
            raise TransientError(
                f"{method} {endpoint} failed without a response: {exc.__class__.__name__}: {exc}",
                endpoint=endpoint,
            ) from exc
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        log_request_result(method=method, endpoint=endpoint, status=response.status_code, elapsed_ms=elapsed_ms)
        self._metrics.incr(f"http_{response.status_code // 100}xx")
        if not response.is_success:
            raise error_for_response(response, method=method, endpoint=endpoint)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise PermanentError(
                f"{method} {endpoint} returned invalid JSON",
                status_code=response.status_code,
                endpoint=endpoint,
            ) from exc

    async def request(
        self,
        method: str,
        endpoint: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Execute one logical call, retrying transient failures with backoff."""
        attempt_number = 0

        async def _one_attempt() -> Any:
            nonlocal attempt_number
            attempt_number += 1
            log_attempt(method=method, endpoint=endpoint, attempt=attempt_number, max_attempts=self._max_retries)
            return await self._gate.submit(lambda: self._send_once(method, endpoint, payload, params))

        def _on_retry(number: int, exc: Exception, delay: float) -> None:
            self._metrics.incr("retries")
            log_retry(number, endpoint=endpoint, reason=str(exc), delay=delay, classification="transient")

        outcome = await attempt(
            _one_attempt,
            classify=is_retryable,
            max_attempts=self._max_retries,
            delay_fn=self._backoff,
            sleep=self._sleep,
            on_retry=_on_retry,
        )
        if not outcome.ok:
            LOGGER.error(
                "request_failed",
                method=method,
                endpoint=endpoint,
                attempts=outcome.attempts,
                classification="transient" if is_retryable(outcome.error) else "permanent",
                error=str(outcome.error),
            )
        return outcome.unwrap()

    def _target_body(self, url: str, options: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        body: Dict[str, Any] = {"url": url, **DEFAULT_SCRAPE_OPTIONS, "session_id": str(uuid.uuid4())}
        body.update(options or {})
        body["url"] = url
        if not self.use_mock:
            body.pop(MOCK_STATUS_OPTION, None)
        return body

    async def scrape(self, url: str, options: Optional[Dict[str, Any]] = None) -> Any:
        """Scrape a single target URL."""
        return await self.request("POST", "/scrape", self._target_body(url, options))

    async def batch_scrape(self, targets: Sequence[ScrapeTarget]) -> List[TargetOutcome]:
        """Scrape independent targets in one upstream call.

        The whole batch is one gated request and is retried as a unit. The
        response carries one entry per target in input order; an entry with an
        ``error`` becomes a failed outcome without affecting its neighbours.
        """
        if not targets:
            return []
        batch = [self._target_body(target.url, target.options) for target in targets]
        payload = await self.request("POST", "/batch-scrape", {"batch": batch})
        entries = payload.get("results") if isinstance(payload, dict) else payload
        if not isinstance(entries, list) or len(entries) != len(targets):
            count = len(entries) if isinstance(entries, list) else 0
            raise PermanentError(
                f"POST /batch-scrape returned {count} results for {len(targets)} targets",
                endpoint="/batch-scrape",
            )
        return [_outcome_for(target, entry) for target, entry in zip(targets, entries)]

    async def get_remote_job_status(self, remote_job_id: str) -> Any:
        return await self.request("GET", f"/jobs/{remote_job_id}")

    async def get_remote_job_result(self, remote_job_id: str) -> Any:
        return await self.request("GET", f"/jobs/{remote_job_id}/result")

    async def cancel_remote_job(self, remote_job_id: str) -> Any:
        return await self.request("POST", f"/jobs/{remote_job_id}/cancel")

    async def get_account_info(self) -> Any:
        return await self.request("GET", "/account")

    async def get_usage_stats(self, period: str = "day") -> Any:
        return await self.request("GET", "/usage", params={"period": period})

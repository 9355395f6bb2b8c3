"""Throttled request gate pacing outbound calls.

An approximate fixed-window limiter: at most ``max_per_window`` units are
dispatched per window and at most ``max_concurrent_dispatch`` run at once.
Work is never dropped; callers only see backpressure as latency. Because the
window counter resets on a fixed boundary, a burst straddling a boundary can
briefly exceed a strict per-second rate.
"""
from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Optional, Set, Tuple, TypeVar

import structlog

from scrapequeue.observability.metrics import MetricsRegistry

LOGGER = structlog.get_logger(__name__)

T = TypeVar("T")

_Pending = Tuple[Callable[[], Awaitable[Any]], "asyncio.Future[Any]"]


class ThrottledGate:
    """FIFO gate bounded by a per-window budget and an in-flight ceiling."""

    def __init__(
        self,
        *,
        max_per_window: int = 60,
        window_seconds: float = 60.0,
        max_concurrent_dispatch: int = 60,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_per_window <= 0 or max_concurrent_dispatch <= 0 or window_seconds <= 0:
            raise ValueError("gate limits must be positive")
        self.max_per_window = max_per_window
        self.window_seconds = window_seconds
        self.max_concurrent_dispatch = max_concurrent_dispatch
        self._metrics = metrics
        self._clock = clock
        self._queue: Deque[_Pending] = deque()
        self._in_flight = 0
        self._dispatched_this_window = 0
        self._window_start: Optional[float] = None
        self._wakeup: Optional[asyncio.TimerHandle] = None
        self._tasks: Set["asyncio.Task[None]"] = set()

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def submit(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Queue a unit of work and wait for its result."""
        future: "asyncio.Future[T]" = asyncio.get_running_loop().create_future()
        self._queue.append((fn, future))
        self._drain()
        return await future

    def _drain(self) -> None:
        now = self._clock()
        if self._window_start is None or now - self._window_start >= self.window_seconds:
            self._window_start = now
            self._dispatched_this_window = 0

        while (
            self._queue
            and self._in_flight < self.max_concurrent_dispatch
            and self._dispatched_this_window < self.max_per_window
        ):
            fn, future = self._queue.popleft()
            if future.done():
                continue
            self._in_flight += 1
            self._dispatched_this_window += 1
            if self._metrics is not None:
                self._metrics.incr("requests_dispatched")
            task = asyncio.ensure_future(self._run(fn, future))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        if self._queue and self._dispatched_this_window >= self.max_per_window and self._wakeup is None:
            delay = max(0.0, self._window_start + self.window_seconds - now)
            LOGGER.debug("gate_window_exhausted", queued=len(self._queue), resume_in_seconds=round(delay, 3))
            self._wakeup = asyncio.get_running_loop().call_later(delay, self._on_window_boundary)

    def _on_window_boundary(self) -> None:
        self._wakeup = None
        self._drain()

    async def _run(self, fn: Callable[[], Awaitable[Any]], future: "asyncio.Future[Any]") -> None:
        try:
            result = await fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            if not future.done():
                future.set_exception(exc)
        else:
            if not future.done():
                future.set_result(result)
        finally:
            self._in_flight -= 1
            if self._queue:
                self._drain()

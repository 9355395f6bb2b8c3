"""Fixed-interval tick loop built on asyncio."""
from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Optional

import structlog

if TYPE_CHECKING:
    from scrapequeue.orchestrator.scheduler import JobScheduler

LOGGER = structlog.get_logger(__name__)


async def run_schedule_loop(
    scheduler: JobScheduler,
    *,
    interval_seconds: float = 10.0,
    ticks: Optional[int] = None,
    drain: bool = True,
) -> int:
    """Tick ``scheduler`` every ``interval_seconds``; return the number of jobs started.

    With ``ticks`` set the loop stops after that many iterations and, when
    ``drain`` is True, waits for the jobs it started to finish.
    """
    tick = 0
    started = 0
    while ticks is None or tick < ticks:
        try:
            started += len(await scheduler.tick())
        except Exception:
            LOGGER.exception("tick_failed", tick=tick)
        tick += 1
        if ticks is None or tick < ticks:
            await asyncio.sleep(interval_seconds)
    if drain:
        await scheduler.wait_idle()
    return started

"""Retry with backoff expressed as a combinator over an async callable."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(slots=True)
class Attempt(Generic[T]):
    """Either a value or the last error, plus how many attempts were made."""

    value: Optional[T] = None
    error: Optional[Exception] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


def linear_backoff(base_delay: float) -> Callable[[int], float]:
    """Delay of ``base_delay * attempt_number`` before the next attempt."""
    if base_delay <= 0:
        raise ValueError("base_delay must be positive")

    def _delay(attempt_number: int) -> float:
        return base_delay * attempt_number

    return _delay


async def attempt(
    fn: Callable[[], Awaitable[T]],
    *,
    classify: Callable[[Exception], bool],
    max_attempts: int,
    delay_fn: Callable[[int], float],
    sleep: Sleep = asyncio.sleep,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
) -> Attempt[T]:
    """Call ``fn`` until it succeeds, fails permanently or the budget runs out.

    ``classify`` returns True for retryable errors. The returned ``Attempt``
    carries the last error when no attempt succeeded.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    last_error: Optional[Exception] = None
    for number in range(1, max_attempts + 1):
        try:
            value = await fn()
        except Exception as exc:
            last_error = exc
            if number == max_attempts or not classify(exc):
                return Attempt(error=exc, attempts=number)
            delay = delay_fn(number)
            if on_retry is not None:
                on_retry(number, exc, delay)
            await sleep(delay)
            continue
        return Attempt(value=value, attempts=number)
    return Attempt(error=last_error, attempts=max_attempts)

import asyncio

import pytest

from scrapequeue.errors import PermanentError, TransientError
from scrapequeue.fetch.retry import attempt, linear_backoff


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _is_transient(exc):
    return isinstance(exc, TransientError)


def test_attempt_exhausts_budget_with_growing_delays():
    sleep = RecordingSleep()
    calls = []

    async def _fails():
        calls.append(1)
        raise TransientError("503", status_code=503)

    outcome = asyncio.run(
        attempt(_fails, classify=_is_transient, max_attempts=3, delay_fn=linear_backoff(2.0), sleep=sleep)
    )
    assert not outcome.ok
    assert outcome.attempts == 3
    assert len(calls) == 3
    assert sleep.delays == [2.0, 4.0]
    with pytest.raises(TransientError):
        outcome.unwrap()


def test_attempt_stops_on_permanent_error():
    sleep = RecordingSleep()

    async def _rejects():
        raise PermanentError("404", status_code=404)

    outcome = asyncio.run(
        attempt(_rejects, classify=_is_transient, max_attempts=3, delay_fn=linear_backoff(2.0), sleep=sleep)
    )
    assert outcome.attempts == 1
    assert isinstance(outcome.error, PermanentError)
    assert sleep.delays == []


def test_attempt_returns_value_after_recovery():
    sleep = RecordingSleep()
    retries = []
    state = {"calls": 0}

    async def _flaky():
        state["calls"] += 1
        if state["calls"] == 1:
            raise TransientError("429", status_code=429)
        return "payload"

    outcome = asyncio.run(
        attempt(
            _flaky,
            classify=_is_transient,
            max_attempts=3,
            delay_fn=linear_backoff(0.5),
            sleep=sleep,
            on_retry=lambda number, exc, delay: retries.append((number, delay)),
        )
    )
    assert outcome.ok
    assert outcome.unwrap() == "payload"
    assert outcome.attempts == 2
    assert retries == [(1, 0.5)]


def test_attempt_requires_a_positive_budget():
    async def _never():
        return None

    with pytest.raises(ValueError):
        asyncio.run(attempt(_never, classify=_is_transient, max_attempts=0, delay_fn=linear_backoff(1)))


def test_linear_backoff_requires_a_positive_base():
    assert [linear_backoff(0.5)(number) for number in (1, 2, 3)] == [0.5, 1.0, 1.5]
    with pytest.raises(ValueError):
        linear_backoff(0)

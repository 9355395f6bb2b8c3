import asyncio

import httpx
import orjson
import pytest

from scrapequeue.errors import PermanentError, TransientError
from scrapequeue.fetch.client import ScrapeApiClient, ScrapeTarget
from scrapequeue.fetch.gate import ThrottledGate
from scrapequeue.fetch.mock import MOCK_STATUS_OPTION
from scrapequeue.observability.metrics import MetricsRegistry

BASE_URL = "https://upstream.test/v1"


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _client(handler, *, sleep=None, metrics=None, api_key="test-key"):
    return ScrapeApiClient(
        gate=ThrottledGate(),
        base_url=BASE_URL,
        api_key=api_key,
        transport=httpx.MockTransport(handler),
        sleep=sleep or RecordingSleep(),
        metrics=metrics,
    )


def test_always_503_is_attempted_max_retries_times():
    calls = []
    sleep = RecordingSleep()

    def handler(request):
        calls.append(request)
        return httpx.Response(503, text="unavailable")

    async def _run():
        async with _client(handler, sleep=sleep) as client:
            with pytest.raises(TransientError) as excinfo:
                await client.scrape("https://example.com/a")
        return excinfo.value

    error = asyncio.run(_run())
    assert len(calls) == 3
    assert error.status_code == 503
    assert len(sleep.delays) == 2
    assert sleep.delays[0] < sleep.delays[1]


def test_permanent_error_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(404, text="missing")

    async def _run():
        async with _client(handler) as client:
            with pytest.raises(PermanentError):
                await client.scrape("https://example.com/a")

    asyncio.run(_run())
    assert len(calls) == 1


def test_rate_limit_and_network_errors_are_retried():
    responses = iter(["network", 429, 200])
    metrics = MetricsRegistry()

    def handler(request):
        step = next(responses)
        if step == "network":
            raise httpx.ConnectError("connection refused", request=request)
        if step == 429:
            return httpx.Response(429, text="slow down")
        return httpx.Response(200, json={"ok": True})

    async def _run():
        async with _client(handler, metrics=metrics) as client:
            return await client.scrape("https://example.com/a")

    assert asyncio.run(_run()) == {"ok": True}
    assert metrics.get("retries") == 2
    assert metrics.get("network_errors") == 1
    assert metrics.get("http_2xx") == 1


def test_scrape_sends_merged_options_and_auth():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        seen["path"] = request.url.path
        seen["body"] = orjson.loads(request.content)
        return httpx.Response(200, json={"ok": True})

    async def _run():
        async with _client(handler) as client:
            await client.scrape("https://example.com/a", {"geo": "de", "url": "https://ignored.test"})

    asyncio.run(_run())
    assert seen["auth"] == "Bearer test-key"
    assert seen["path"] == "/v1/scrape"
    assert seen["body"]["url"] == "https://example.com/a"
    assert seen["body"]["geo"] == "de"
    assert seen["body"]["headless"] is True
    assert seen["body"]["session_id"]


def test_batch_scrape_is_one_gated_call_with_per_target_errors():
    seen = []
    metrics = MetricsRegistry()

    def handler(request):
        body = orjson.loads(request.content)
        seen.append((request.url.path, body))
        results = []
        for item in body["batch"]:
            if item["url"].endswith("/two"):
                results.append({"url": item["url"], "error": "target blocked", "status_code": 403})
            else:
                results.append({"url": item["url"]})
        return httpx.Response(200, json={"results": results})

    targets = [
        ScrapeTarget(url=f"https://example.com/{name}", options={"geo": "de"}) for name in ("one", "two", "three")
    ]

    async def _run():
        async with _client(handler, metrics=metrics) as client:
            return await client.batch_scrape(targets)

    outcomes = asyncio.run(_run())
    assert [path for path, _ in seen] == ["/v1/batch-scrape"]
    assert metrics.get("requests_dispatched") == 1
    batch = seen[0][1]["batch"]
    assert [item["url"] for item in batch] == [target.url for target in targets]
    assert all(item["geo"] == "de" and item["headless"] is True for item in batch)
    assert [outcome.ok for outcome in outcomes] == [True, False, True]
    assert outcomes[0].payload == {"url": "https://example.com/one"}
    assert outcomes[1].status_code == 403
    assert outcomes[1].error == "target blocked"
    assert outcomes[2].payload == {"url": "https://example.com/three"}


def test_batch_scrape_retries_the_whole_batch():
    calls = []
    sleep = RecordingSleep()

    def handler(request):
        calls.append(request.url.path)
        if len(calls) == 1:
            return httpx.Response(503, text="busy")
        body = orjson.loads(request.content)
        return httpx.Response(200, json=[{"url": item["url"]} for item in body["batch"]])

    targets = [ScrapeTarget(url="https://example.com/a"), ScrapeTarget(url="https://example.com/b")]

    async def _run():
        async with _client(handler, sleep=sleep) as client:
            return await client.batch_scrape(targets)

    outcomes = asyncio.run(_run())
    assert calls == ["/v1/batch-scrape", "/v1/batch-scrape"]
    assert sleep.delays == [2.0]
    assert [outcome.payload["url"] for outcome in outcomes] == ["https://example.com/a", "https://example.com/b"]


def test_batch_scrape_rejects_a_short_response():
    def handler(request):
        return httpx.Response(200, json={"results": [{"url": "https://example.com/a"}]})

    targets = [ScrapeTarget(url="https://example.com/a"), ScrapeTarget(url="https://example.com/b")]

    async def _run():
        async with _client(handler) as client:
            with pytest.raises(PermanentError) as excinfo:
                await client.batch_scrape(targets)
        return excinfo.value

    error = asyncio.run(_run())
    assert "1 results for 2 targets" in str(error)


def test_mock_status_option_is_not_sent_upstream():
    seen = {}

    def handler(request):
        seen["body"] = orjson.loads(request.content)
        return httpx.Response(200, json={"ok": True})

    async def _run():
        async with _client(handler) as client:
            return await client.scrape("https://example.com/a", {MOCK_STATUS_OPTION: 503, "geo": "fr"})

    assert asyncio.run(_run()) == {"ok": True}
    assert MOCK_STATUS_OPTION not in seen["body"]
    assert seen["body"]["geo"] == "fr"


def test_mock_fallback_without_api_key():
    sleep = RecordingSleep()

    async def _run():
        client = ScrapeApiClient(gate=ThrottledGate(), base_url=BASE_URL, api_key=None, sleep=sleep)
        async with client:
            assert client.use_mock
            first = await client.scrape("https://example.com/page")
            second = await client.scrape("https://example.com/page")
            status = await client.get_remote_job_status("abc")
            usage = await client.get_usage_stats("week")
            with pytest.raises(TransientError):
                await client.scrape("https://example.com/page", {MOCK_STATUS_OPTION: 503})
        return first, second, status, usage

    first, second, status, usage = asyncio.run(_run())
    assert first == second
    assert first["url"] == "https://example.com/page"
    assert first["status"] == "completed"
    assert status == {"id": "abc", "status": "completed"}
    assert usage["period"] == "week"
    assert sleep.delays == [2.0, 4.0]


def test_mock_batch_fails_individual_targets():
    metrics = MetricsRegistry()
    targets = [
        ScrapeTarget(url="https://example.com/ok"),
        ScrapeTarget(url="https://example.com/gone", options={MOCK_STATUS_OPTION: 404}),
        ScrapeTarget(url="https://example.com/also-ok"),
    ]

    async def _run():
        client = ScrapeApiClient(gate=ThrottledGate(metrics=metrics), base_url=BASE_URL, metrics=metrics)
        async with client:
            return await client.batch_scrape(targets)

    outcomes = asyncio.run(_run())
    assert metrics.get("requests_dispatched") == 1
    assert [outcome.ok for outcome in outcomes] == [True, False, True]
    assert outcomes[0].payload["url"] == "https://example.com/ok"
    assert outcomes[1].status_code == 404
    assert outcomes[2].payload["url"] == "https://example.com/also-ok"

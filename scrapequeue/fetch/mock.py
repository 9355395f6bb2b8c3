"""Deterministic stand-in for the upstream scrape API.

Used as an ``httpx.MockTransport`` handler when no credential is configured, so
requests still travel through the gate, the retry loop and the error
classification exactly as they would against the live endpoint.
"""
from __future__ import annotations

import re
import uuid
from typing import Any, Dict, List
from urllib.parse import urlparse

import httpx
import orjson

MOCK_STATUS_OPTION = "mock_status"

_JOB_PATH = re.compile(r"^/jobs/(?P<job_id>[^/]+)(?P<suffix>/result|/cancel)?$")


def _mock_id(*parts: str) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, "/".join(parts)))


def _json(status_code: int, payload: Dict[str, Any]) -> httpx.Response:
    return httpx.Response(status_code, content=orjson.dumps(payload), headers={"Content-Type": "application/json"})


class MockUpstream:
    """Responds to upstream endpoints by shape; a ``mock_status`` option forces an error status."""

    def __init__(self, base_url: str) -> None:
        self._base_path = urlparse(base_url).path.rstrip("/")

    def _endpoint(self, request: httpx.Request) -> str:
        path = request.url.path
        if self._base_path and path.startswith(self._base_path):
            path = path[len(self._base_path):]
        return path or "/"

    def handle(self, request: httpx.Request) -> httpx.Response:
        endpoint = self._endpoint(request)
        body: Dict[str, Any] = orjson.loads(request.content) if request.content else {}

        forced = body.get(MOCK_STATUS_OPTION)
        if forced is not None and int(forced) >= 400:
            return _json(int(forced), {"error": f"mock upstream returned {forced}", "url": body.get("url")})

        if request.method == "POST" and endpoint == "/batch-scrape":
            return self._batch_response(body.get("batch") or [])

        if request.method == "POST" and endpoint == "/scrape":
            url = str(body.get("url") or "https://example.com")
            return _json(200, self._scrape_payload(url))

        if request.method == "GET" and endpoint == "/jobs":
            return _json(
                200,
                {
                    "jobs": [
                        {"id": _mock_id("jobs", "1"), "status": "completed", "url": "https://example.com/page1"},
                        {"id": _mock_id("jobs", "2"), "status": "pending", "url": "https://example.com/page2"},
                    ],
                    "total": 2,
                    "page": int(request.url.params.get("page", 1)),
                    "pageSize": int(request.url.params.get("pageSize", 10)),
                },
            )

        match = _JOB_PATH.match(endpoint)
        if match:
            job_id = match.group("job_id")
            suffix = match.group("suffix")
            if suffix == "/result":
                return _json(200, {"id": job_id, "status": "completed", "results": []})
            if suffix == "/cancel":
                return _json(200, {"id": job_id, "status": "cancelled"})
            return _json(200, {"id": job_id, "status": "completed"})

        if endpoint == "/account":
            return _json(200, {"id": _mock_id("account"), "plan": "mock", "active": True})

        if endpoint == "/usage":
            return _json(200, {"period": request.url.params.get("period", "day"), "requests": 0, "limit": 0})

        return _json(200, {"status": "success", "message": "Mock response"})

    @staticmethod
    def _scrape_payload(url: str) -> Dict[str, Any]:
        host = urlparse(url).netloc or "example.com"
        return {
            "id": _mock_id(url),
            "status": "completed",
            "url": url,
            "data": {
                "title": f"Mock page for {host}",
                "description": "Deterministic mock content",
                "content": "Lorem ipsum dolor sit amet, consectetur adipiscing elit.",
                "metadata": {"language": "nl"},
            },
        }

    def _batch_response(self, batch: List[Dict[str, Any]]) -> httpx.Response:
        """One entry per target; a target forced to 5xx or 429 fails the whole call."""
        results: List[Dict[str, Any]] = []
        for item in batch:
            url = str(item.get("url") or "https://example.com")
            forced = item.get(MOCK_STATUS_OPTION)
            if forced is None or int(forced) < 400:
                results.append(self._scrape_payload(url))
                continue
            status = int(forced)
            if status >= 500 or status == 429:
                return _json(status, {"error": f"mock upstream returned {status}", "url": url})
            results.append({"url": url, "error": f"mock upstream returned {status}", "status_code": status})
        return _json(200, {"results": results})

"""Per-platform URL validation and request building.

An adapter knows which job types a platform supports, which URLs are valid for
each type and which scrape options to send by default. ``build_targets`` maps a
job's URLs one-to-one onto requests so outcomes can be correlated by index.
"""
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from scrapequeue.errors import ValidationError
from scrapequeue.fetch.client import ScrapeTarget
from scrapequeue.orchestrator.jobs import Job

PathRule = Callable[[str], bool]


@dataclass(frozen=True)
class JobTypeRule:
    """URL path check and default options for one job type."""

    path_ok: PathRule
    defaults: Dict[str, Any] = field(default_factory=dict)


def _matches(pattern: str) -> PathRule:
    compiled = re.compile(pattern)
    return lambda path: compiled.search(path) is not None


def _any_path(path: str) -> bool:
    return True


class PlatformAdapter:
    """Validates target URLs and builds per-target requests for one platform."""

    def __init__(self, name: str, *, hosts: Optional[Iterable[str]], job_types: Dict[str, JobTypeRule]) -> None:
        self.name = name
        self._hosts = frozenset(hosts) if hosts is not None else None
        self._job_types = job_types

    @property
    def job_types(self) -> List[str]:
        return sorted(self._job_types)

    def _host_ok(self, host: str) -> bool:
        if self._hosts is None:
            return True
        return host in self._hosts

    def matches(self, url: str) -> bool:
        """Return True when the URL's host belongs to this platform."""
        parsed = urlparse(url)
        return parsed.scheme in {"http", "https"} and bool(parsed.hostname) and self._host_ok(parsed.hostname or "")

    def rule_for(self, job_type: str) -> Optional[JobTypeRule]:
        if "*" in self._job_types:
            return self._job_types.get(job_type, self._job_types["*"])
        return self._job_types.get(job_type)

    def is_valid_url(self, url: str, job_type: str) -> bool:
        rule = self.rule_for(job_type)
        if rule is None or not self.matches(url):
            return False
        return rule.path_ok(urlparse(url).path)

    def validate_urls(self, urls: Iterable[str], job_type: str) -> List[str]:
        """Keep the URLs that are valid for ``job_type``, preserving order."""
        if self.rule_for(job_type) is None:
            raise ValidationError(f"Unsupported job type for {self.name}: {job_type}")
        return [url for url in urls if isinstance(url, str) and self.is_valid_url(url, job_type)]

    def default_options(self, job_type: str) -> Dict[str, Any]:
        rule = self.rule_for(job_type)
        return dict(rule.defaults) if rule is not None else {}

    def build_targets(self, job: Job) -> List[ScrapeTarget]:
        """One request per job URL, in order, tagged with platform and session."""
        urls = job.urls
        if not urls:
            raise ValueError(f"Job {job.id} has no urls in its config")
        targets: List[ScrapeTarget] = []
        for url in urls:
            options = {**job.options, "platform": job.platform, "session_id": f"{job.id}-{uuid.uuid4().hex[:8]}"}
            targets.append(ScrapeTarget(url=url, options=options))
        return targets


def _hosts(*names: str) -> List[str]:
    return [host for name in names for host in (name, f"www.{name}")]


class AmazonAdapter(PlatformAdapter):
    """Amazon storefronts span many country domains, so match on the ``amazon.`` label."""

    def _host_ok(self, host: str) -> bool:
        return "amazon." in host


_DESKTOP = {"device_type": "desktop", "javascript": True, "timeout": 30000}
_MOBILE = {"device_type": "mobile", "javascript": True, "timeout": 60000}

ADAPTERS: Dict[str, PlatformAdapter] = {
    "amazon": AmazonAdapter(
        "amazon",
        hosts=(),
        job_types={
            "product": JobTypeRule(_matches(r"/dp/|/gp/product/"), {**_DESKTOP, "wait_for": "#productTitle"}),
            "search": JobTypeRule(_matches(r"^/s\b|/search/"), {**_DESKTOP, "wait_for": ".s-result-list"}),
            "review": JobTypeRule(_matches(r"/product-reviews/"), {**_DESKTOP, "wait_for": "#cm_cr-review_list"}),
        },
    ),
    "instagram": PlatformAdapter(
        "instagram",
        hosts=_hosts("instagram.com"),
        job_types={
            "hashtag": JobTypeRule(_matches(r"^/explore/tags/"), {**_MOBILE, "wait_for": "article"}),
            "profile": JobTypeRule(
                lambda path: "/p/" not in path and "/explore/" not in path and len(path) > 1,
                {**_MOBILE, "wait_for": "header"},
            ),
            "post": JobTypeRule(_matches(r"/p/"), {**_MOBILE, "wait_for": "article"}),
        },
    ),
    "reddit": PlatformAdapter(
        "reddit",
        hosts=["reddit.com", "www.reddit.com", "old.reddit.com"],
        job_types={
            "subreddit": JobTypeRule(_matches(r"^/r/[\w-]+/?$"), {**_DESKTOP, "wait_for": ".Post"}),
            "post": JobTypeRule(_matches(r"/comments/"), {**_DESKTOP, "wait_for": ".Comment"}),
            "user": JobTypeRule(_matches(r"^/user/[\w-]+/?$"), {**_DESKTOP, "wait_for": ".Post"}),
        },
    ),
    "tiktok": PlatformAdapter(
        "tiktok",
        hosts=[*_hosts("tiktok.com"), "m.tiktok.com"],
        job_types={
            "hashtag": JobTypeRule(_matches(r"^/(discover/)?tag/"), {**_MOBILE, "wait_for": ".video-feed-item"}),
            "profile": JobTypeRule(
                lambda path: path.startswith("/@") and "/video/" not in path,
                {**_MOBILE, "wait_for": ".user-profile-header"},
            ),
            "video": JobTypeRule(_matches(r"/video/"), {**_MOBILE, "wait_for": ".video-player"}),
        },
    ),
    "trustpilot": PlatformAdapter(
        "trustpilot",
        hosts=_hosts("trustpilot.com"),
        job_types={
            "business": JobTypeRule(
                lambda path: path.startswith("/review/") and "/reviews" not in path,
                {**_DESKTOP, "wait_for": ".business-unit-profile"},
            ),
            "reviews": JobTypeRule(_matches(r"/reviews"), {**_DESKTOP, "wait_for": ".review-list"}),
        },
    ),
}

GENERIC_ADAPTER = PlatformAdapter("generic", hosts=None, job_types={"*": JobTypeRule(_any_path)})


def get_adapter(platform: str) -> PlatformAdapter:
    """Return the adapter for ``platform``, or the permissive generic adapter."""
    return ADAPTERS.get(platform, GENERIC_ADAPTER)


def match_adapter(url: str) -> Optional[PlatformAdapter]:
    """Find the platform whose hosts include the URL."""
    for adapter in ADAPTERS.values():
        if adapter.matches(url):
            return adapter
    return None

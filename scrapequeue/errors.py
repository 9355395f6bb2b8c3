"""Error taxonomy shared by the gate, client, scheduler and service layers."""
from __future__ import annotations

from typing import Optional


class ScrapeQueueError(Exception):
    """Base class for every error raised by scrapequeue."""


class ValidationError(ScrapeQueueError):
    """A job submission was malformed and never reached the store."""


class JobNotFoundError(ScrapeQueueError):
    """No job exists for the requested identifier."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class UpstreamError(ScrapeQueueError):
    """A call to the upstream scrape endpoint failed."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, endpoint: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


class TransientError(UpstreamError):
    """Network failure, 5xx or 429: worth another attempt."""


class PermanentError(UpstreamError):
    """Any other upstream rejection; retrying will not help."""


class ProcessingError(ScrapeQueueError):
    """Results were fetched but could not be persisted."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Result processing failed: {message}")

"""Definitions for scrape jobs, their results and their lifecycle."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class JobStatus:
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    ALL = (PENDING, RUNNING, COMPLETED, FAILED, CANCELLED)
    TERMINAL = frozenset({COMPLETED, FAILED, CANCELLED})


class JobPriority:
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    ALL = (LOW, MEDIUM, HIGH)
    RANK = {LOW: 0, MEDIUM: 1, HIGH: 2}


class ResultStatus:
    SUCCESS = "success"
    ERROR = "error"

    ALL = (SUCCESS, ERROR)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobConfig(BaseModel):
    """Validated job configuration: the target URLs and the scrape options."""

    urls: List[str] = Field(min_length=1)
    options: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("urls")
    @classmethod
    def _non_blank(cls, value: List[str]) -> List[str]:
        cleaned = [url.strip() for url in value]
        if any(not url for url in cleaned):
            raise ValueError("urls must not contain blank entries")
        return cleaned


@dataclass
class Job:
    """A unit of scheduled work targeting one or more URLs on one platform."""

    id: str
    project_id: str
    platform: str
    job_type: str
    config: Dict[str, Any]
    priority: str = JobPriority.MEDIUM
    status: str = JobStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def urls(self) -> List[str]:
        return list(self.config.get("urls") or [])

    @property
    def options(self) -> Dict[str, Any]:
        return dict(self.config.get("options") or {})

    @property
    def is_terminal(self) -> bool:
        return self.status in JobStatus.TERMINAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "platform": self.platform,
            "job_type": self.job_type,
            "config": self.config,
            "priority": self.priority,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "error": self.error,
        }


@dataclass
class Result:
    """The per-target outcome of executing a job."""

    job_id: str
    project_id: str
    platform: str
    url: str
    status: str
    data: Any
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "project_id": self.project_id,
            "platform": self.platform,
            "url": self.url,
            "status": self.status,
            "data": self.data,
            "created_at": _iso(self.created_at),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None

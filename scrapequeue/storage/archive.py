"""Filesystem object archive for raw result batches."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Optional

import structlog

LOGGER = structlog.get_logger(__name__)


@dataclass(slots=True)
class ArchiveResult:
    """Outcome of a single archive upload."""

    success: bool
    path: str
    error: Optional[str] = None


def dataset_path(project_id: str, platform: str, job_id: str, filename: str) -> str:
    """Build the hierarchical ``{project}/{platform}/{job}/{filename}`` key."""
    return str(PurePosixPath(project_id, platform, job_id, filename))


class LocalArchive:
    """Writes payloads under a root directory; never overwrites an existing object."""

    def __init__(self, root: Path) -> None:
        self._root = root

    async def put(self, path: str, payload: bytes) -> ArchiveResult:
        target = self._root / PurePosixPath(path)
        try:
            if self._root.resolve() not in target.resolve().parents:
                raise ValueError(f"archive path escapes root: {path}")
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("xb") as handle:
                handle.write(payload)
        except (OSError, ValueError) as exc:
            LOGGER.warning("archive_put_failed", path=path, error=str(exc))
            return ArchiveResult(success=False, path=path, error=str(exc))
        LOGGER.debug("archive_put", path=path, bytes=len(payload))
        return ArchiveResult(success=True, path=path)

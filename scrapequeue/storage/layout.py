"""Path helpers for the data root layout."""
from __future__ import annotations

from pathlib import Path


class DataLayout:
    """Computes structured output paths inside the data root."""

    def __init__(self, *, root: Path) -> None:
        self.root = root
        self.db = root / "db"
        self.archive = root / "archive"
        self.metrics = root / "metrics"
        for path in (self.db, self.archive, self.metrics):
            path.mkdir(parents=True, exist_ok=True)

    def store_path(self) -> Path:
        """Return the SQLite file holding jobs and results."""
        return self.db / "jobs.db"

"""SQLite-backed job and result store.

The store is the single source of truth for job status. Status writes are
compare-and-set: a transition only applies when the row is still in one of the
expected prior states, which keeps transitions monotonic even when a job is
cancelled while its execution is still in flight.
"""
from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar, Union

import orjson

from scrapequeue.orchestrator.jobs import Job, JobPriority, JobStatus, Result

T = TypeVar("T")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS scrape_jobs (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    platform TEXT NOT NULL,
    job_type TEXT NOT NULL,
    config_json TEXT NOT NULL,
    priority TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    error TEXT
);
CREATE INDEX IF NOT EXISTS idx_scrape_jobs_status ON scrape_jobs (status, created_at);
CREATE INDEX IF NOT EXISTS idx_scrape_jobs_project ON scrape_jobs (project_id, created_at);
CREATE TABLE IF NOT EXISTS scrape_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL REFERENCES scrape_jobs (id),
    project_id TEXT NOT NULL,
    platform TEXT NOT NULL,
    url TEXT NOT NULL,
    status TEXT NOT NULL,
    data_json TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_scrape_results_job ON scrape_results (job_id);
CREATE INDEX IF NOT EXISTS idx_scrape_results_project ON scrape_results (project_id);
"""

_PRIORITY_RANK_SQL = "CASE priority " + " ".join(
    f"WHEN '{name}' THEN {rank}" for name, rank in JobPriority.RANK.items()
) + " ELSE 0 END"


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        project_id=row["project_id"],
        platform=row["platform"],
        job_type=row["job_type"],
        config=orjson.loads(row["config_json"]),
        priority=row["priority"],
        status=row["status"],
        created_at=_parse_ts(row["created_at"]),
        started_at=_parse_ts(row["started_at"]),
        completed_at=_parse_ts(row["completed_at"]),
        error=row["error"],
    )


def _row_to_result(row: sqlite3.Row) -> Result:
    return Result(
        id=row["id"],
        job_id=row["job_id"],
        project_id=row["project_id"],
        platform=row["platform"],
        url=row["url"],
        status=row["status"],
        data=orjson.loads(row["data_json"]),
        created_at=_parse_ts(row["created_at"]),
    )


_INSERT_RESULT_SQL = (
    "INSERT INTO scrape_results (job_id, project_id, platform, url, status, data_json, created_at)"
    " VALUES (?, ?, ?, ?, ?, ?, ?)"
)


def _result_rows(results: Iterable[Result]) -> List[Tuple[Any, ...]]:
    return [
        (
            result.job_id,
            result.project_id,
            result.platform,
            result.url,
            result.status,
            orjson.dumps(result.data).decode(),
            _ts(result.created_at),
        )
        for result in results
    ]


class JobStore:
    """Durable record of job and result rows, queryable by status, priority and time.

    SQLite work runs in a worker thread while the store lock is held; only one
    statement batch touches the shared connection at a time.
    """

    def __init__(self, path: Union[Path, str]) -> None:
        if isinstance(path, Path):
            path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = sqlite3.connect(str(path), check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._connection.executescript(_SCHEMA)
        self._lock = asyncio.Lock()

    def close(self) -> None:
        self._connection.close()

    async def _call(self, fn: Callable[[], T]) -> T:
        async with self._lock:
            return await asyncio.to_thread(fn)

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> Callable[[], List[sqlite3.Row]]:
        return lambda: self._connection.execute(sql, params).fetchall()

    async def insert_job(self, job: Job) -> Job:
        params = (
            job.id,
            job.project_id,
            job.platform,
            job.job_type,
            orjson.dumps(job.config).decode(),
            job.priority,
            job.status,
            _ts(job.created_at),
            _ts(job.started_at),
            _ts(job.completed_at),
            job.error,
        )

        def _insert() -> None:
            with self._connection:
                self._connection.execute(
                    "INSERT INTO scrape_jobs (id, project_id, platform, job_type, config_json, priority,"
                    " status, created_at, started_at, completed_at, error)"
                    " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    params,
                )

        await self._call(_insert)
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        rows = await self._call(self._fetchall("SELECT * FROM scrape_jobs WHERE id = ?", (job_id,)))
        return _row_to_job(rows[0]) if rows else None

    async def select_pending(self, limit: int) -> List[Job]:
        """Return up to ``limit`` pending jobs, highest priority first, then oldest first."""
        if limit <= 0:
            return []
        rows = await self._call(
            self._fetchall(
                f"SELECT * FROM scrape_jobs WHERE status = 'pending'"
                f" ORDER BY {_PRIORITY_RANK_SQL} DESC, created_at ASC, rowid ASC LIMIT ?",
                (limit,),
            )
        )
        return [_row_to_job(row) for row in rows]

    async def list_jobs(
        self,
        *,
        project_id: Optional[str] = None,
        status: Optional[str] = None,
        platform: Optional[str] = None,
        job_type: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[Job]:
        """Return jobs matching every supplied filter, newest first."""
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (
            ("project_id", project_id),
            ("status", status),
            ("platform", platform),
            ("job_type", job_type),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if since is not None:
            clauses.append("created_at >= ?")
            params.append(_ts(since))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._call(
            self._fetchall(f"SELECT * FROM scrape_jobs{where} ORDER BY created_at DESC, rowid DESC", params)
        )
        return [_row_to_job(row) for row in rows]

    async def transition(
        self,
        job_id: str,
        *,
        to_status: str,
        from_statuses: Sequence[str],
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Move a job to ``to_status`` if it is still in one of ``from_statuses``.

        Returns False when the row is missing or has already moved on.
        """
        assignments = ["status = ?"]
        params: List[Any] = [to_status]
        if started_at is not None:
            assignments.append("started_at = ?")
            params.append(_ts(started_at))
        if completed_at is not None:
            assignments.append("completed_at = ?")
            params.append(_ts(completed_at))
        if error is not None:
            assignments.append("error = ?")
            params.append(error)
        placeholders = ", ".join("?" for _ in from_statuses)
        params.append(job_id)
        params.extend(from_statuses)

        def _update() -> int:
            with self._connection:
                cursor = self._connection.execute(
                    f"UPDATE scrape_jobs SET {', '.join(assignments)}"
                    f" WHERE id = ? AND status IN ({placeholders})",
                    params,
                )
            return cursor.rowcount

        return await self._call(_update) == 1

    async def insert_results(self, results: Iterable[Result]) -> int:
        """Bulk insert result rows in a single transaction."""
        rows = _result_rows(results)
        if not rows:
            return 0

        def _insert() -> None:
            with self._connection:
                self._connection.executemany(_INSERT_RESULT_SQL, rows)

        await self._call(_insert)
        return len(rows)

    async def insert_results_while_running(self, job_id: str, results: Iterable[Result]) -> bool:
        """Bulk insert result rows only if ``job_id`` is still ``running``.

        The status check and the insert share one transaction, so a job that
        was cancelled or otherwise finished never gains result rows.
        """
        rows = _result_rows(results)

        def _insert() -> bool:
            with self._connection:
                current = self._connection.execute(
                    "SELECT status FROM scrape_jobs WHERE id = ?", (job_id,)
                ).fetchone()
                if current is None or current["status"] != JobStatus.RUNNING:
                    return False
                if rows:
                    self._connection.executemany(_INSERT_RESULT_SQL, rows)
            return True

        return await self._call(_insert)

    async def list_results(self, job_id: str) -> List[Result]:
        rows = await self._call(
            self._fetchall(
                "SELECT * FROM scrape_results WHERE job_id = ? ORDER BY created_at ASC, id ASC",
                (job_id,),
            )
        )
        return [_row_to_result(row) for row in rows]

    async def count_jobs_by_status(self, project_id: str) -> Dict[str, int]:
        return await self._count_by_status("scrape_jobs", project_id)

    async def count_results_by_status(self, project_id: str) -> Dict[str, int]:
        return await self._count_by_status("scrape_results", project_id)

    async def _count_by_status(self, table: str, project_id: str) -> Dict[str, int]:
        rows = await self._call(
            self._fetchall(
                f"SELECT status, COUNT(*) AS total FROM {table} WHERE project_id = ? GROUP BY status",
                (project_id,),
            )
        )
        return {row["status"]: int(row["total"]) for row in rows}

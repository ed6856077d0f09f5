"""Durable job store backed by SQLite.

Each operation opens its own connection and runs in a worker thread,
so blocking disk I/O never stalls the event loop. Claims use a single
UPDATE ... WHERE id = (SELECT ...) RETURNING statement inside a
BEGIN IMMEDIATE transaction; the lease condition is repeated in the
outer WHERE so the update is a compare-and-set even across processes
sharing the database file.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from cry_analysis.queue.models import PRIORITY_NORMAL, Job, JobState, JobStats
from cry_analysis.queue.store import JobStore, _released
from cry_analysis.utils.errors import StorageError

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        payload TEXT NOT NULL,
        priority INTEGER NOT NULL DEFAULT 0,
        scheduled_at REAL NOT NULL,
        created_at REAL NOT NULL,
        state TEXT NOT NULL,
        lease_owner TEXT,
        lease_expires_at REAL,
        last_finished_at REAL,
        fail_count INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        recurrence_seconds REAL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_jobs_claim
        ON jobs(state, kind, priority DESC, scheduled_at)
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_recurring_kind
        ON jobs(kind) WHERE recurrence_seconds IS NOT NULL
    """,
)

_COLUMNS = (
    "id, kind, payload, priority, scheduled_at, created_at, state, "
    "lease_owner, lease_expires_at, last_finished_at, fail_count, "
    "last_error, recurrence_seconds"
)


def _ts(value: datetime | None) -> float | None:
    return value.timestamp() if value is not None else None


def _dt(value: float | None) -> datetime | None:
    return datetime.fromtimestamp(value, UTC) if value is not None else None


def _row_to_job(row: sqlite3.Row) -> Job:
    return Job(
        id=row["id"],
        kind=row["kind"],
        payload=json.loads(row["payload"]),
        priority=row["priority"],
        scheduled_at=_dt(row["scheduled_at"]),
        created_at=_dt(row["created_at"]),
        state=JobState(row["state"]),
        lease_owner=row["lease_owner"],
        lease_expires_at=_dt(row["lease_expires_at"]),
        last_finished_at=_dt(row["last_finished_at"]),
        fail_count=row["fail_count"],
        last_error=row["last_error"],
        recurrence_seconds=row["recurrence_seconds"],
    )


def _job_params(job: Job) -> tuple[Any, ...]:
    return (
        job.id,
        job.kind,
        json.dumps(job.payload),
        job.priority,
        _ts(job.scheduled_at),
        _ts(job.created_at),
        job.state.value,
        job.lease_owner,
        _ts(job.lease_expires_at),
        _ts(job.last_finished_at),
        job.fail_count,
        job.last_error,
        job.recurrence_seconds,
    )


class SQLiteJobStore(JobStore):
    """SQLite implementation of the job store.

    Reads configuration from environment variables:
        JOB_DB_PATH
    """

    def __init__(self, db_path: str | None = None, busy_timeout: float = 30.0) -> None:
        self.db_path = Path(db_path or os.environ.get("JOB_DB_PATH", "jobs.db"))
        self.busy_timeout = busy_timeout
        self._init_db()

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Open a connection and run one transaction on it."""
        conn = sqlite3.connect(
            self.db_path, timeout=self.busy_timeout, isolation_level=None
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.Error as exc:
            raise StorageError(
                f"Job store operation failed: {exc}", operation="sqlite"
            ) from exc
        finally:
            conn.close()

    def _init_db(self) -> None:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in _SCHEMA:
                conn.execute(statement)
            conn.commit()
        finally:
            conn.close()

    # -- synchronous implementations, run via asyncio.to_thread --

    def _add(self, job: Job) -> Job:
        with self._transaction(immediate=True) as conn:
            conn.execute(
                f"INSERT INTO jobs ({_COLUMNS}) VALUES "
                "(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                _job_params(job),
            )
        return job

    def _get(self, job_id: str) -> Job | None:
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return _row_to_job(row) if row else None

    def _list_jobs(self, kind: str | None) -> list[Job]:
        with self._transaction() as conn:
            if kind is None:
                rows = conn.execute(f"SELECT {_COLUMNS} FROM jobs").fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {_COLUMNS} FROM jobs WHERE kind = ?", (kind,)
                ).fetchall()
        return [_row_to_job(row) for row in rows]

    def _upsert_recurring(
        self,
        kind: str,
        interval_seconds: float,
        now: datetime,
        payload: dict[str, Any] | None,
        priority: int,
    ) -> Job:
        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                f"""
                UPDATE jobs SET recurrence_seconds = ?, payload = ?, priority = ?
                WHERE kind = ? AND recurrence_seconds IS NOT NULL
                RETURNING {_COLUMNS}
                """,
                (interval_seconds, json.dumps(payload or {}), priority, kind),
            ).fetchone()
            if row:
                return _row_to_job(row)

            job = Job(
                kind=kind,
                payload=payload or {},
                priority=priority,
                scheduled_at=now,
                created_at=now,
                recurrence_seconds=interval_seconds,
            )
            conn.execute(
                f"INSERT INTO jobs ({_COLUMNS}) VALUES "
                "(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                _job_params(job),
            )
        return job

    def _claim(
        self,
        kinds: Sequence[str],
        owner: str,
        lease_seconds: float,
        now: datetime,
    ) -> Job | None:
        if not kinds:
            return None
        now_ts = now.timestamp()
        placeholders = ", ".join("?" for _ in kinds)
        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                f"""
                UPDATE jobs SET lease_owner = ?, lease_expires_at = ?
                WHERE id = (
                    SELECT id FROM jobs
                    WHERE state = ?
                      AND kind IN ({placeholders})
                      AND scheduled_at <= ?
                      AND (lease_owner IS NULL OR lease_expires_at <= ?)
                    ORDER BY priority DESC, scheduled_at ASC, created_at ASC
                    LIMIT 1
                )
                AND (lease_owner IS NULL OR lease_expires_at <= ?)
                RETURNING {_COLUMNS}
                """,
                (
                    owner,
                    now_ts + lease_seconds,
                    JobState.QUEUED.value,
                    *kinds,
                    now_ts,
                    now_ts,
                    now_ts,
                ),
            ).fetchone()
        return _row_to_job(row) if row else None

    def _release(
        self, job_id: str, owner: str, now: datetime, error: str | None
    ) -> Job | None:
        with self._transaction(immediate=True) as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM jobs WHERE id = ? AND lease_owner = ?",
                (job_id, owner),
            ).fetchone()
            if row is None:
                return None
            released = _released(_row_to_job(row), now, error)
            conn.execute(
                """
                UPDATE jobs SET state = ?, scheduled_at = ?, lease_owner = NULL,
                    lease_expires_at = NULL, last_finished_at = ?,
                    fail_count = ?, last_error = ?
                WHERE id = ?
                """,
                (
                    released.state.value,
                    _ts(released.scheduled_at),
                    _ts(released.last_finished_at),
                    released.fail_count,
                    released.last_error,
                    job_id,
                ),
            )
        return released

    def _delete_matching(
        self, match: dict[str, Any], now: datetime, kind: str | None
    ) -> int:
        clauses = [
            "state = ?",
            "(lease_owner IS NULL OR lease_expires_at <= ?)",
        ]
        params: list[Any] = [JobState.QUEUED.value, now.timestamp()]
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind)
        for key, value in match.items():
            clauses.append("json_extract(payload, ?) = ?")
            params.extend([f"$.{key}", value])
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                f"DELETE FROM jobs WHERE {' AND '.join(clauses)}", params
            )
            return cursor.rowcount

    def _stats(self, now: datetime) -> JobStats:
        now_ts = now.timestamp()
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(lease_owner IS NOT NULL AND lease_expires_at > ?), 0)
                        AS running,
                    COALESCE(SUM(fail_count > 0), 0) AS failed,
                    COALESCE(SUM(state = ? AND scheduled_at > ?), 0) AS scheduled
                FROM jobs
                """,
                (now_ts, JobState.QUEUED.value, now_ts),
            ).fetchone()
        return JobStats(
            total=row["total"],
            running=row["running"],
            failed=row["failed"],
            scheduled=row["scheduled"],
        )

    def _purge_finished(self, before: datetime) -> int:
        with self._transaction(immediate=True) as conn:
            cursor = conn.execute(
                "DELETE FROM jobs WHERE state != ? AND last_finished_at < ?",
                (JobState.QUEUED.value, before.timestamp()),
            )
            return cursor.rowcount

    # -- async interface --

    async def add(self, job: Job) -> Job:
        return await asyncio.to_thread(self._add, job)

    async def get(self, job_id: str) -> Job | None:
        return await asyncio.to_thread(self._get, job_id)

    async def list_jobs(self, kind: str | None = None) -> list[Job]:
        return await asyncio.to_thread(self._list_jobs, kind)

    async def upsert_recurring(
        self,
        kind: str,
        interval_seconds: float,
        now: datetime,
        payload: dict[str, Any] | None = None,
        priority: int = PRIORITY_NORMAL,
    ) -> Job:
        return await asyncio.to_thread(
            self._upsert_recurring, kind, interval_seconds, now, payload, priority
        )

    async def claim(
        self,
        kinds: Sequence[str],
        owner: str,
        lease_seconds: float,
        now: datetime,
    ) -> Job | None:
        return await asyncio.to_thread(
            self._claim, list(kinds), owner, lease_seconds, now
        )

    async def release(
        self,
        job_id: str,
        owner: str,
        now: datetime,
        error: str | None = None,
    ) -> Job | None:
        return await asyncio.to_thread(self._release, job_id, owner, now, error)

    async def delete_matching(
        self,
        match: dict[str, Any],
        now: datetime,
        kind: str | None = None,
    ) -> int:
        return await asyncio.to_thread(self._delete_matching, match, now, kind)

    async def stats(self, now: datetime) -> JobStats:
        return await asyncio.to_thread(self._stats, now)

    async def purge_finished(self, before: datetime) -> int:
        return await asyncio.to_thread(self._purge_finished, before)

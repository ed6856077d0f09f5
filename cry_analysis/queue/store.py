"""Persistent job store interface and in-memory implementation.

The one primitive every store must make atomic is claim(): find an
eligible job and set its lease in a single compare-and-set step, so
two workers racing for the same job can never both win.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from cry_analysis.queue.models import (
    PRIORITY_NORMAL,
    Job,
    JobState,
    JobStats,
    next_run_at,
)


class JobStore(ABC):
    """Abstract base class for job storage.

    All timestamps are passed in by the caller; stores never read the
    clock themselves.
    """

    @abstractmethod
    async def add(self, job: Job) -> Job:
        """Persist a new job."""

    @abstractmethod
    async def get(self, job_id: str) -> Job | None:
        """Fetch a job by id."""

    @abstractmethod
    async def list_jobs(self, kind: str | None = None) -> list[Job]:
        """Return all jobs, optionally restricted to one kind."""

    @abstractmethod
    async def upsert_recurring(
        self,
        kind: str,
        interval_seconds: float,
        now: datetime,
        payload: dict[str, Any] | None = None,
        priority: int = PRIORITY_NORMAL,
    ) -> Job:
        """Create the recurring job for kind, or refresh its interval.

        A new definition is due immediately; an existing one keeps its
        next scheduled time.
        """

    @abstractmethod
    async def claim(
        self,
        kinds: Sequence[str],
        owner: str,
        lease_seconds: float,
        now: datetime,
    ) -> Job | None:
        """Atomically lease the next eligible job among kinds.

        Eligible: QUEUED, scheduled_at <= now, and unleased or lease
        expired. Ordered by priority (highest first) then scheduled_at.
        """

    @abstractmethod
    async def release(
        self,
        job_id: str,
        owner: str,
        now: datetime,
        error: str | None = None,
    ) -> Job | None:
        """Release a lease after a run; error marks the run as failed.

        Recurring jobs are re-armed at their next run time. Returns None
        if the job is gone or the lease now belongs to another owner.
        """

    @abstractmethod
    async def delete_matching(
        self,
        match: dict[str, Any],
        now: datetime,
        kind: str | None = None,
    ) -> int:
        """Delete QUEUED jobs without an active lease whose payload matches."""

    @abstractmethod
    async def stats(self, now: datetime) -> JobStats:
        """Count total, running, failed, and future-scheduled jobs."""

    @abstractmethod
    async def purge_finished(self, before: datetime) -> int:
        """Delete COMPLETED/FAILED jobs that finished before the cutoff."""


def _released(job: Job, now: datetime, error: str | None) -> Job:
    """Compute a job's state after its lease is released."""
    changes: dict[str, Any] = {
        "lease_owner": None,
        "lease_expires_at": None,
        "last_finished_at": now,
    }
    if error is not None:
        changes["fail_count"] = job.fail_count + 1
        changes["last_error"] = error
    if job.is_recurring:
        changes["state"] = JobState.QUEUED
        changes["scheduled_at"] = next_run_at(job, now)
    else:
        changes["state"] = JobState.FAILED if error is not None else JobState.COMPLETED
    return replace(job, **changes)


class InMemoryJobStore(JobStore):
    """Process-local job store.

    Suitable for tests and single-process deployments. A single asyncio
    lock serializes every operation, which makes claim() atomic among
    coroutines on the same event loop.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}
        self._lock = asyncio.Lock()

    async def add(self, job: Job) -> Job:
        async with self._lock:
            self._jobs[job.id] = replace(job)
            return replace(job)

    async def get(self, job_id: str) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    async def list_jobs(self, kind: str | None = None) -> list[Job]:
        async with self._lock:
            return [
                replace(job)
                for job in self._jobs.values()
                if kind is None or job.kind == kind
            ]

    async def upsert_recurring(
        self,
        kind: str,
        interval_seconds: float,
        now: datetime,
        payload: dict[str, Any] | None = None,
        priority: int = PRIORITY_NORMAL,
    ) -> Job:
        async with self._lock:
            for job_id, job in self._jobs.items():
                if job.kind == kind and job.is_recurring:
                    updated = replace(
                        job,
                        recurrence_seconds=interval_seconds,
                        payload=payload or {},
                        priority=priority,
                    )
                    self._jobs[job_id] = updated
                    return replace(updated)
            job = Job(
                kind=kind,
                payload=payload or {},
                priority=priority,
                scheduled_at=now,
                created_at=now,
                recurrence_seconds=interval_seconds,
            )
            self._jobs[job.id] = job
            return replace(job)

    async def claim(
        self,
        kinds: Sequence[str],
        owner: str,
        lease_seconds: float,
        now: datetime,
    ) -> Job | None:
        async with self._lock:
            eligible = [
                job
                for job in self._jobs.values()
                if job.kind in kinds and job.is_claimable(now)
            ]
            if not eligible:
                return None
            job = min(eligible, key=Job.sort_key)
            claimed = replace(
                job,
                lease_owner=owner,
                lease_expires_at=now + timedelta(seconds=lease_seconds),
            )
            self._jobs[job.id] = claimed
            return replace(claimed)

    async def release(
        self,
        job_id: str,
        owner: str,
        now: datetime,
        error: str | None = None,
    ) -> Job | None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.lease_owner != owner:
                return None
            released = _released(job, now, error)
            self._jobs[job_id] = released
            return replace(released)

    async def delete_matching(
        self,
        match: dict[str, Any],
        now: datetime,
        kind: str | None = None,
    ) -> int:
        async with self._lock:
            doomed = [
                job_id
                for job_id, job in self._jobs.items()
                if job.state is JobState.QUEUED
                and not job.has_active_lease(now)
                and job.matches(match, kind)
            ]
            for job_id in doomed:
                del self._jobs[job_id]
            return len(doomed)

    async def stats(self, now: datetime) -> JobStats:
        async with self._lock:
            jobs = list(self._jobs.values())
        return JobStats(
            total=len(jobs),
            running=sum(1 for job in jobs if job.has_active_lease(now)),
            failed=sum(1 for job in jobs if job.fail_count > 0),
            scheduled=sum(
                1
                for job in jobs
                if job.state is JobState.QUEUED and job.scheduled_at > now
            ),
        )

    async def purge_finished(self, before: datetime) -> int:
        async with self._lock:
            doomed = [
                job_id
                for job_id, job in self._jobs.items()
                if job.state is not JobState.QUEUED
                and job.last_finished_at is not None
                and job.last_finished_at < before
            ]
            for job_id in doomed:
                del self._jobs[job_id]
            return len(doomed)

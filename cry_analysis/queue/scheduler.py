"""Job scheduler: enqueueing, leased claims, and concurrency caps.

The store owns job existence and lease exclusivity. The scheduler adds
the per-process concurrency limits on top: a global cap on jobs held at
once and a per-kind cap, both counted only for jobs this scheduler has
claimed and not yet released.
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from cry_analysis.queue.models import PRIORITY_NORMAL, Job, JobStats, utc_now
from cry_analysis.queue.store import JobStore

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 300.0
DEFAULT_MAX_CONCURRENCY = 3


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


class JobScheduler:
    """Durable job scheduler with global and per-kind concurrency caps.

    Reads configuration from environment variables:
        JOB_LEASE_SECONDS, JOB_MAX_CONCURRENCY

    Args:
        store: Persistent job store.
        worker_id: Lease owner name for jobs claimed by this scheduler.
        max_concurrency: Maximum jobs held at once.
        kind_concurrency: Per-kind maximum, e.g. {"analyze-audio": 2}.
        default_kind_concurrency: Cap for kinds not in kind_concurrency.
        lease_seconds: Lease duration applied on claim.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        store: JobStore,
        worker_id: str | None = None,
        max_concurrency: int | None = None,
        kind_concurrency: dict[str, int] | None = None,
        default_kind_concurrency: int = 1,
        lease_seconds: float | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.worker_id = worker_id or _default_worker_id()
        if max_concurrency is None:
            max_concurrency = int(
                os.environ.get("JOB_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY)
            )
        if lease_seconds is None:
            lease_seconds = float(
                os.environ.get("JOB_LEASE_SECONDS", DEFAULT_LEASE_SECONDS)
            )
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be positive")
        self.max_concurrency = max_concurrency
        self.kind_concurrency = dict(kind_concurrency or {})
        self.default_kind_concurrency = default_kind_concurrency
        self.lease_seconds = lease_seconds
        self.clock = clock
        self._active: dict[str, str] = {}
        self._lock = asyncio.Lock()

    def limit_for(self, kind: str) -> int:
        return self.kind_concurrency.get(kind, self.default_kind_concurrency)

    @property
    def running_count(self) -> int:
        return len(self._active)

    def running_for(self, kind: str) -> int:
        return sum(1 for active_kind in self._active.values() if active_kind == kind)

    async def enqueue_now(
        self,
        kind: str,
        payload: dict[str, Any] | None = None,
        priority: int = PRIORITY_NORMAL,
    ) -> Job:
        """Persist a job that is claimable immediately."""
        return await self.enqueue_at(kind, payload, self.clock(), priority)

    async def enqueue_at(
        self,
        kind: str,
        payload: dict[str, Any] | None,
        when: datetime,
        priority: int = PRIORITY_NORMAL,
    ) -> Job:
        """Persist a job that is not claimable before when."""
        now = self.clock()
        job = Job(
            kind=kind,
            payload=dict(payload or {}),
            priority=priority,
            scheduled_at=when,
            created_at=now,
        )
        await self.store.add(job)
        logger.info(
            "Enqueued %s job %s for %s",
            kind,
            job.id,
            when.isoformat(),
            extra={"job_id": job.id, "job_kind": kind},
        )
        return job

    async def enqueue_in(
        self,
        kind: str,
        payload: dict[str, Any] | None,
        delay_seconds: float,
        priority: int = PRIORITY_NORMAL,
    ) -> Job:
        when = self.clock() + timedelta(seconds=max(delay_seconds, 0.0))
        return await self.enqueue_at(kind, payload, when, priority)

    async def schedule_recurring(
        self,
        kind: str,
        interval_seconds: float,
        payload: dict[str, Any] | None = None,
        priority: int = PRIORITY_NORMAL,
    ) -> Job:
        """Create or refresh the recurring definition for kind."""
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        job = await self.store.upsert_recurring(
            kind, interval_seconds, self.clock(), payload, priority
        )
        logger.info(
            "Recurring %s job %s every %.0fs",
            kind,
            job.id,
            interval_seconds,
            extra={"job_id": job.id, "job_kind": kind},
        )
        return job

    async def claim(self, kinds: Iterable[str]) -> Job | None:
        """Lease the next eligible job among kinds that still has capacity.

        Kinds whose per-kind cap is reached are left out of the store
        query; nothing is claimed once the global cap is reached.
        """
        async with self._lock:
            if len(self._active) >= self.max_concurrency:
                return None
            open_kinds = [
                kind for kind in kinds if self.running_for(kind) < self.limit_for(kind)
            ]
            if not open_kinds:
                return None

            job = await self.store.claim(
                open_kinds, self.worker_id, self.lease_seconds, self.clock()
            )
            if job is None:
                return None
            self._active[job.id] = job.kind

        logger.info(
            "Claimed %s job %s",
            job.kind,
            job.id,
            extra={"job_id": job.id, "job_kind": job.kind},
        )
        return job

    async def complete(self, job: Job) -> Job | None:
        """Release a job after a successful run."""
        return await self._release(job, None)

    async def fail(self, job: Job, error: str | BaseException) -> Job | None:
        """Release a job after a failed run and record the error.

        A failed non-recurring job is not rescheduled here.
        """
        return await self._release(job, str(error) or type(error).__name__)

    async def abandon(self, job: Job) -> None:
        """Stop tracking a job locally without releasing its lease.

        The store keeps the job leased until the lease expires, after
        which the same job is claimable again.
        """
        async with self._lock:
            self._active.pop(job.id, None)
        logger.warning(
            "Abandoned %s job %s; lease expires at %s",
            job.kind,
            job.id,
            job.lease_expires_at.isoformat() if job.lease_expires_at else "unknown",
            extra={"job_id": job.id, "job_kind": job.kind},
        )

    async def _release(self, job: Job, error: str | None) -> Job | None:
        try:
            released = await self.store.release(
                job.id, self.worker_id, self.clock(), error
            )
        finally:
            async with self._lock:
                self._active.pop(job.id, None)

        if released is None:
            logger.warning(
                "Lease on %s job %s was lost before release",
                job.kind,
                job.id,
                extra={"job_id": job.id, "job_kind": job.kind},
            )
        elif error is None:
            logger.info(
                "Completed %s job %s",
                job.kind,
                job.id,
                extra={"job_id": job.id, "job_kind": job.kind},
            )
        return released

    async def cancel_matching(
        self, match: dict[str, Any], kind: str | None = None
    ) -> int:
        """Delete unclaimed jobs whose payload contains every match item.

        Jobs currently leased by a worker are left alone.
        """
        count = await self.store.delete_matching(match, self.clock(), kind)
        if count:
            logger.info("Cancelled %d job(s) matching %s", count, match)
        return count

    async def get_job_stats(self) -> JobStats:
        return await self.store.stats(self.clock())

    async def purge_finished(self, older_than: timedelta) -> int:
        """Delete finished one-shot jobs last released before now - older_than."""
        return await self.store.purge_finished(self.clock() - older_than)

"""Polling worker that claims jobs and dispatches them to handlers.

Each poll cycle claims jobs until the scheduler reports no eligible
job or no free capacity, then runs every claimed job as its own task
so a slow handler never blocks further polling or claims.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Mapping

from cry_analysis.queue.models import Job
from cry_analysis.queue.scheduler import JobScheduler
from cry_analysis.utils.errors import LeaseRetainedError

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[object]]

DEFAULT_POLL_INTERVAL_SECONDS = 10.0


class JobWorker:
    """Job polling loop with per-job tasks.

    Reads configuration from environment variables:
        JOB_POLL_INTERVAL_SECONDS

    Args:
        scheduler: Scheduler to claim from and release to.
        handlers: Mapping of job kind to async handler.
        poll_interval: Seconds between poll cycles.
    """

    def __init__(
        self,
        scheduler: JobScheduler,
        handlers: Mapping[str, JobHandler],
        poll_interval: float | None = None,
    ) -> None:
        self.scheduler = scheduler
        self.handlers = dict(handlers)
        self.poll_interval = poll_interval or float(
            os.environ.get("JOB_POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS)
        )
        self._running = False
        self._wakeup = asyncio.Event()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def _execute(self, job: Job) -> None:
        """Run one job's handler and release its lease."""
        handler = self.handlers[job.kind]
        try:
            await handler(job)
        except LeaseRetainedError as exc:
            logger.error(
                "Job %s (%s) left for re-delivery: %s",
                job.id,
                job.kind,
                exc,
                exc_info=True,
                extra={"job_id": job.id, "job_kind": job.kind, "error": str(exc)},
            )
            await self.scheduler.abandon(job)
            return
        except Exception as exc:
            logger.error(
                "Job %s (%s) failed: %s",
                job.id,
                job.kind,
                exc,
                exc_info=True,
                extra={"job_id": job.id, "job_kind": job.kind, "error": str(exc)},
            )
            await self.scheduler.fail(job, exc)
            return
        await self.scheduler.complete(job)

    async def _run_job(self, job: Job) -> None:
        try:
            await self._execute(job)
        except Exception:
            logger.error(
                "Could not release job %s (%s); lease will expire",
                job.id,
                job.kind,
                exc_info=True,
                extra={"job_id": job.id, "job_kind": job.kind},
            )
        finally:
            # A freed slot may admit another claim before the next interval.
            self._wakeup.set()

    async def poll_once(self) -> int:
        """Claim every job that fits under the caps and start it.

        Returns:
            Number of jobs started this cycle.
        """
        started = 0
        while True:
            job = await self.scheduler.claim(self.handlers)
            if job is None:
                break
            task = asyncio.create_task(self._run_job(job), name=f"job-{job.id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started += 1
        return started

    async def run(self) -> None:
        """Poll until stop() is called."""
        self._running = True
        logger.info(
            "Job worker %s polling every %.1fs for %s",
            self.scheduler.worker_id,
            self.poll_interval,
            ", ".join(sorted(self.handlers)),
        )

        while self._running:
            self._wakeup.clear()
            try:
                count = await self.poll_once()
                if count > 0:
                    logger.info("Started %d job(s) this cycle", count)
            except Exception:
                logger.error("Unexpected error in poll cycle", exc_info=True)

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except TimeoutError:
                pass

    def stop(self) -> None:
        """Signal the polling loop to stop after its current cycle."""
        self._running = False
        self._wakeup.set()
        logger.info("Job worker stopping")

    async def wait_idle(self) -> None:
        """Wait for every in-flight job task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def drain(self, timeout: float) -> bool:
        """Wait up to timeout seconds for in-flight jobs.

        Jobs still running afterwards are cancelled; their leases expire
        and the store re-delivers them.

        Returns:
            True if every job finished within the timeout.
        """
        if not self._tasks:
            return True
        try:
            await asyncio.wait_for(self.wait_idle(), timeout=timeout)
            return True
        except TimeoutError:
            pending = list(self._tasks)
            logger.warning(
                "Cancelling %d job(s) still running after %.0fs",
                len(pending),
                timeout,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            return False

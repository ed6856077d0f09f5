"""Recurring maintenance jobs.

Three self-scheduled jobs run alongside analysis:
- cleanup-failed: cancel failed analyses whose retries are exhausted and
  whose last retry is older than the grace window, then purge old
  finished job rows.
- cleanup-temp-files: delete stale objects under the storage temp prefix.
- health-check: emit a JSON snapshot of dependency and queue health.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from cry_analysis.analysis.state import CANCELLED_NOTE
from cry_analysis.observability.metrics import log_health_snapshot
from cry_analysis.prediction.interface import PredictionService
from cry_analysis.queue.models import PRIORITY_LOW, Job, JobKind, utc_now
from cry_analysis.queue.scheduler import JobScheduler
from cry_analysis.queue.worker import JobHandler
from cry_analysis.storage.audio_storage import AudioStorage
from cry_analysis.storage.recordings import RecordingStore
from cry_analysis.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

FAILED_SWEEP_INTERVAL_SECONDS = 24 * 3600
TEMP_CLEANUP_INTERVAL_SECONDS = 24 * 3600
HEALTH_CHECK_INTERVAL_SECONDS = 5 * 60

FAILED_GRACE_PERIOD = timedelta(hours=24)
FINISHED_JOB_RETENTION = timedelta(days=7)
TEMP_OBJECT_MAX_AGE_HOURS = 24.0


def _load_average() -> list[float] | None:
    try:
        return list(os.getloadavg())
    except OSError:
        return None


class MaintenanceTasks:
    """Handlers and schedules for the recurring maintenance jobs.

    Args:
        scheduler: Job scheduler that owns the recurring definitions.
        recordings: Recording entity store.
        predictor: Prediction service to probe.
        audio_storage: Object storage holding temporary uploads.
        retry_policy: Supplies the retry cap a cancellable record must reach.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        scheduler: JobScheduler,
        recordings: RecordingStore,
        predictor: PredictionService,
        audio_storage: AudioStorage,
        retry_policy: RetryPolicy,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.scheduler = scheduler
        self.recordings = recordings
        self.predictor = predictor
        self.audio_storage = audio_storage
        self.retry_policy = retry_policy
        self.clock = clock

    def handlers(self) -> dict[str, JobHandler]:
        return {
            JobKind.CLEANUP_FAILED: self.sweep_failed_analyses,
            JobKind.CLEANUP_TEMP_FILES: self.cleanup_temp_files,
            JobKind.HEALTH_CHECK: self.emit_health_check,
        }

    async def schedule(self) -> None:
        """Create or refresh the recurring maintenance job definitions."""
        await self.scheduler.schedule_recurring(
            JobKind.CLEANUP_FAILED, FAILED_SWEEP_INTERVAL_SECONDS, priority=PRIORITY_LOW
        )
        await self.scheduler.schedule_recurring(
            JobKind.CLEANUP_TEMP_FILES,
            TEMP_CLEANUP_INTERVAL_SECONDS,
            priority=PRIORITY_LOW,
        )
        await self.scheduler.schedule_recurring(
            JobKind.HEALTH_CHECK, HEALTH_CHECK_INTERVAL_SECONDS
        )

    async def sweep_failed_analyses(self, job: Job | None = None) -> dict[str, int]:
        """Cancel exhausted failed analyses and purge old finished jobs."""
        now = self.clock()
        cancelled = await self.recordings.cancel_stale_failed(
            min_retry_count=self.retry_policy.max_retries,
            last_retry_before=now - FAILED_GRACE_PERIOD,
            note=CANCELLED_NOTE,
        )
        purged = await self.scheduler.purge_finished(FINISHED_JOB_RETENTION)
        logger.info(
            "Failed sweep cancelled %d analysis record(s), purged %d job(s)",
            cancelled,
            purged,
            extra={"job_kind": JobKind.CLEANUP_FAILED},
        )
        return {"cancelled": cancelled, "purged_jobs": purged}

    async def cleanup_temp_files(self, job: Job | None = None) -> dict[str, Any]:
        """Delete temporary storage objects older than a day."""
        result = await asyncio.to_thread(
            self.audio_storage.cleanup_temp_objects,
            TEMP_OBJECT_MAX_AGE_HOURS,
            self.clock(),
        )
        if result.errors:
            logger.warning(
                "Temp cleanup finished with %d error(s)",
                len(result.errors),
                extra={"job_kind": JobKind.CLEANUP_TEMP_FILES},
            )
        return result.to_dict()

    async def emit_health_check(self, job: Job | None = None) -> dict[str, Any]:
        """Log a health snapshot; an unavailable dependency raises severity."""
        service = await self.predictor.service_status()
        stats = await self.scheduler.get_job_stats()
        snapshot = {
            "prediction_service": service,
            "jobs": stats.to_dict(),
            "running_here": self.scheduler.running_count,
            "load_average": _load_average(),
        }
        degraded = not service.get("available", False)
        log_health_snapshot(snapshot, degraded=degraded)
        return snapshot

"""Tests for cry_analysis.maintenance recurring jobs."""

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from cry_analysis.analysis.models import AnalysisRecord, AnalysisStatus, Recording
from cry_analysis.analysis.state import CANCELLED_NOTE
from cry_analysis.maintenance import MaintenanceTasks
from cry_analysis.queue.models import JobKind
from cry_analysis.queue.scheduler import JobScheduler
from cry_analysis.queue.store import InMemoryJobStore
from cry_analysis.storage.audio_storage import CleanupResult
from cry_analysis.storage.recordings import InMemoryRecordingStore
from cry_analysis.utils.retry import RetryPolicy

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _failed(recording_id: str, retry_count: int, hours_ago: float) -> Recording:
    return Recording(
        id=recording_id,
        baby_id="baby-1",
        audio_key=f"{recording_id}.wav",
        analysis=AnalysisRecord(
            status=AnalysisStatus.FAILED,
            retry_count=retry_count,
            last_retry_at=NOW - timedelta(hours=hours_ago),
            last_error="timeout",
        ),
    )


@pytest.fixture
def scheduler():
    return JobScheduler(InMemoryJobStore(), worker_id="w", max_concurrency=3, clock=lambda: NOW)


@pytest.fixture
def recordings():
    return InMemoryRecordingStore(
        [
            _failed("stale-exhausted", 3, hours_ago=25),
            _failed("fresh-exhausted", 3, hours_ago=2),
            _failed("stale-with-budget", 1, hours_ago=48),
        ]
    )


@pytest.fixture
def predictor():
    predictor = AsyncMock()
    predictor.service_status.return_value = {
        "available": True,
        "circuit_breaker": {"state": "CLOSED"},
    }
    return predictor


@pytest.fixture
def audio_storage():
    storage = MagicMock()
    storage.cleanup_temp_objects.return_value = CleanupResult(
        scanned=3, deleted=["temp/a"], errors=[]
    )
    return storage


@pytest.fixture
def tasks(scheduler, recordings, predictor, audio_storage):
    return MaintenanceTasks(
        scheduler,
        recordings,
        predictor,
        audio_storage,
        RetryPolicy(max_retries=3),
        clock=lambda: NOW,
    )


class TestSchedule:
    """Tests for recurring job registration."""

    async def test_registers_three_recurring_jobs(self, tasks, scheduler):
        await tasks.schedule()
        await tasks.schedule()

        jobs = {job.kind: job for job in await scheduler.store.list_jobs()}
        assert len(jobs) == 3
        assert jobs[JobKind.CLEANUP_FAILED].recurrence_seconds == 86400
        assert jobs[JobKind.CLEANUP_TEMP_FILES].recurrence_seconds == 86400
        assert jobs[JobKind.HEALTH_CHECK].recurrence_seconds == 300

    def test_handlers_cover_maintenance_kinds(self, tasks):
        assert set(tasks.handlers()) == {
            JobKind.CLEANUP_FAILED,
            JobKind.CLEANUP_TEMP_FILES,
            JobKind.HEALTH_CHECK,
        }


class TestFailedSweep:
    """Tests for the failed-analysis sweep."""

    async def test_cancels_only_exhausted_records_past_grace(self, tasks, recordings):
        result = await tasks.sweep_failed_analyses()

        assert result["cancelled"] == 1
        stale = (await recordings.get("stale-exhausted")).analysis
        assert stale.status is AnalysisStatus.CANCELLED
        assert stale.last_error == CANCELLED_NOTE
        assert (await recordings.get("fresh-exhausted")).analysis.status is AnalysisStatus.FAILED
        assert (await recordings.get("stale-with-budget")).analysis.status is AnalysisStatus.FAILED

    async def test_purges_old_finished_jobs(self, tasks, scheduler):
        old = await scheduler.enqueue_at(JobKind.ANALYZE_AUDIO, {}, NOW - timedelta(days=9))
        await scheduler.store.claim([JobKind.ANALYZE_AUDIO], "w", 60, NOW - timedelta(days=9))
        await scheduler.store.release(old.id, "w", NOW - timedelta(days=8))

        result = await tasks.sweep_failed_analyses()

        assert result["purged_jobs"] == 1
        assert await scheduler.store.get(old.id) is None


class TestTempCleanup:
    """Tests for temporary object cleanup."""

    async def test_delegates_to_storage(self, tasks, audio_storage):
        result = await tasks.cleanup_temp_files()

        audio_storage.cleanup_temp_objects.assert_called_once_with(24.0, NOW)
        assert result == {"scanned": 3, "deleted": 1, "errors": []}


class TestHealthCheck:
    """Tests for health snapshot emission."""

    async def test_emits_info_snapshot(self, tasks, capsys):
        await tasks.emit_health_check()

        entry = json.loads(capsys.readouterr().out.strip())
        assert entry["metric_type"] == "health_check"
        assert entry["severity"] == "INFO"
        assert entry["prediction_service"]["available"] is True
        assert entry["jobs"] == {"total": 0, "running": 0, "failed": 0, "scheduled": 0}

    async def test_degraded_service_logs_warning(self, tasks, predictor, capsys):
        predictor.service_status.return_value = {"available": False}

        snapshot = await tasks.emit_health_check()

        entry = json.loads(capsys.readouterr().out.strip())
        assert entry["severity"] == "WARNING"
        assert snapshot["prediction_service"] == {"available": False}

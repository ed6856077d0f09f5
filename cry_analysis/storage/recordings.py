"""Recording entity store interface and in-memory implementation.

The pipeline reads recordings and writes only their analysis record.
update_analysis() is the single mutation point; the optional expected
status turns it into a compare-and-set so two workers cannot both move
a record out of the same state.
"""

from __future__ import annotations

import asyncio
import copy
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Any

from cry_analysis.analysis.models import AnalysisRecord, AnalysisStatus, Recording


class RecordingStore(ABC):
    """Abstract base class for the recording entity store."""

    @abstractmethod
    async def get(self, recording_id: str) -> Recording | None:
        """Fetch a recording with its analysis record, or None."""

    @abstractmethod
    async def update_analysis(
        self,
        recording_id: str,
        changes: dict[str, Any],
        expected: AnalysisStatus | None = None,
    ) -> AnalysisRecord | None:
        """Apply changes to a recording's analysis record atomically.

        Args:
            recording_id: Recording to update.
            changes: AnalysisRecord field names mapped to new values.
            expected: If set, only update while the current status equals it.

        Returns:
            The updated record, or None if the recording is missing or
            its status no longer matches expected.
        """

    @abstractmethod
    async def recent_completed(
        self, baby_id: str, exclude_id: str, limit: int
    ) -> list[Recording]:
        """Most recently analyzed completed recordings for a baby, newest first."""

    @abstractmethod
    async def cancel_stale_failed(
        self, min_retry_count: int, last_retry_before: datetime, note: str
    ) -> int:
        """Cancel FAILED records at the retry cap that last retried before the cutoff.

        Returns:
            Number of records cancelled.
        """


def _analyzed_timestamp(recording: Recording) -> float:
    analyzed_at = recording.analysis.analyzed_at
    return analyzed_at.timestamp() if analyzed_at else 0.0


class InMemoryRecordingStore(RecordingStore):
    """Process-local recording store for tests and local runs."""

    def __init__(self, recordings: list[Recording] | None = None) -> None:
        self._recordings: dict[str, Recording] = {
            recording.id: copy.deepcopy(recording) for recording in recordings or []
        }
        self._lock = asyncio.Lock()

    async def add(self, recording: Recording) -> None:
        async with self._lock:
            self._recordings[recording.id] = copy.deepcopy(recording)

    async def get(self, recording_id: str) -> Recording | None:
        async with self._lock:
            recording = self._recordings.get(recording_id)
            return copy.deepcopy(recording) if recording else None

    async def update_analysis(
        self,
        recording_id: str,
        changes: dict[str, Any],
        expected: AnalysisStatus | None = None,
    ) -> AnalysisRecord | None:
        async with self._lock:
            recording = self._recordings.get(recording_id)
            if recording is None:
                return None
            if expected is not None and recording.analysis.status is not expected:
                return None
            recording.analysis = replace(recording.analysis, **changes)
            return copy.deepcopy(recording.analysis)

    async def recent_completed(
        self, baby_id: str, exclude_id: str, limit: int
    ) -> list[Recording]:
        async with self._lock:
            completed = [
                recording
                for recording in self._recordings.values()
                if recording.baby_id == baby_id
                and recording.id != exclude_id
                and recording.analysis.status is AnalysisStatus.COMPLETED
                and recording.analysis.result is not None
            ]
            completed.sort(key=_analyzed_timestamp, reverse=True)
            return [copy.deepcopy(recording) for recording in completed[:limit]]

    async def cancel_stale_failed(
        self, min_retry_count: int, last_retry_before: datetime, note: str
    ) -> int:
        async with self._lock:
            cancelled = 0
            for recording in self._recordings.values():
                analysis = recording.analysis
                if (
                    analysis.status is AnalysisStatus.FAILED
                    and analysis.retry_count >= min_retry_count
                    and analysis.last_retry_at is not None
                    and analysis.last_retry_at < last_retry_before
                ):
                    recording.analysis = replace(
                        analysis, status=AnalysisStatus.CANCELLED, last_error=note
                    )
                    cancelled += 1
            return cancelled

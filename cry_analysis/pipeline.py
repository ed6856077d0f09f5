"""Analysis orchestration: scheduling, manual triggers, and the job handler.

analyze_recording() is the "analyze-audio" job handler:
load recording -> check preconditions -> mark processing -> check
service availability -> fetch audio -> build history -> predict ->
persist completed, or consume a retry and reschedule with backoff.

The handler persists analysis state itself before re-raising, so the
record is correct even if the scheduler's own failure bookkeeping does
not run.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from datetime import datetime

from cry_analysis.analysis import state
from cry_analysis.analysis.models import (
    AnalysisRecord,
    AnalysisResult,
    AnalysisStatus,
    Recording,
)
from cry_analysis.observability.metrics import (
    AnalysisMetrics,
    StageTimer,
    log_analysis_metrics,
)
from cry_analysis.prediction.client import HISTORY_WINDOW, audio_content_type
from cry_analysis.prediction.interface import (
    HistoryEntry,
    Prediction,
    PredictionRequest,
    PredictionService,
)
from cry_analysis.queue.models import (
    PRIORITY_HIGH,
    PRIORITY_NORMAL,
    Job,
    JobKind,
    JobStats,
    utc_now,
)
from cry_analysis.queue.scheduler import JobScheduler
from cry_analysis.queue.worker import JobHandler
from cry_analysis.storage.audio_storage import AudioStorage
from cry_analysis.storage.recordings import RecordingStore
from cry_analysis.utils.errors import (
    AnalysisRejectedError,
    AudioFetchError,
    LeaseRetainedError,
    PipelineError,
    PreconditionError,
    ServiceUnavailableError,
)
from cry_analysis.utils.retry import RetryPolicy, retry_with_backoff

logger = logging.getLogger(__name__)


@retry_with_backoff(
    max_retries=2,
    base_delay=1.0,
    retryable_exceptions=(AudioFetchError,),
)
async def _fetch_with_retry(audio_storage: AudioStorage, key: str) -> bytes:
    """Fetch an audio object with retry."""
    return await asyncio.to_thread(audio_storage.fetch_object, key)


def retry_policy_from_env() -> RetryPolicy:
    return RetryPolicy(
        max_retries=int(os.environ.get("ANALYSIS_MAX_RETRIES", 3)),
        base_delay_seconds=float(os.environ.get("ANALYSIS_RETRY_BASE_SECONDS", 30)),
    )


def check_preconditions(recording: Recording) -> None:
    """Raise PreconditionError if the recording cannot be analyzed at all."""
    if recording.birth_date is None:
        raise PreconditionError(
            "Baby birth date is required for analysis",
            recording_id=recording.id,
            field="birth_date",
        )
    if not recording.audio_key:
        raise PreconditionError(
            "Recording has no audio object",
            recording_id=recording.id,
            field="audio_key",
        )
    audio_content_type(recording.audio_key)


class AnalysisPipeline:
    """Schedules analyses and executes "analyze-audio" jobs.

    Reads configuration from environment variables:
        ANALYSIS_MAX_RETRIES, ANALYSIS_RETRY_BASE_SECONDS

    Args:
        scheduler: Job scheduler used for first attempts and retries.
        recordings: Recording entity store.
        predictor: Prediction service client.
        audio_storage: Object storage holding the audio.
        retry_policy: Retry cap and backoff for analysis records.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        scheduler: JobScheduler,
        recordings: RecordingStore,
        predictor: PredictionService,
        audio_storage: AudioStorage,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.scheduler = scheduler
        self.recordings = recordings
        self.predictor = predictor
        self.audio_storage = audio_storage
        self.retry_policy = retry_policy or retry_policy_from_env()
        self.clock = clock

    def handlers(self) -> dict[str, JobHandler]:
        return {JobKind.ANALYZE_AUDIO: self.analyze_recording}

    async def schedule_analysis(
        self,
        recording_id: str,
        delay_ms: int = 0,
        priority: int = PRIORITY_NORMAL,
    ) -> Job:
        """Enqueue an "analyze-audio" job now or after delay_ms."""
        payload = {"recording_id": recording_id}
        if delay_ms > 0:
            return await self.scheduler.enqueue_in(
                JobKind.ANALYZE_AUDIO, payload, delay_ms / 1000.0, priority
            )
        return await self.scheduler.enqueue_now(JobKind.ANALYZE_AUDIO, payload, priority)

    async def cancel_analysis(self, recording_id: str) -> int:
        """Remove pending scheduled analyses for a recording.

        Jobs already claimed by a worker run to completion.

        Returns:
            Number of jobs cancelled.
        """
        count = await self.scheduler.cancel_matching(
            {"recording_id": recording_id}, kind=JobKind.ANALYZE_AUDIO
        )
        logger.info(
            "Cancelled %d analysis job(s) for recording %s",
            count,
            recording_id,
            extra={"recording_id": recording_id},
        )
        return count

    async def get_job_stats(self) -> JobStats:
        return await self.scheduler.get_job_stats()

    async def trigger_analysis(self, recording_id: str) -> AnalysisRecord:
        """Manually request an analysis.

        Completed and processing records are returned unchanged. A failed
        record with retries left is reopened to pending and enqueued.

        Returns:
            The recording's analysis record after the trigger.

        Raises:
            PreconditionError: If the recording does not exist.
            AnalysisRejectedError: If the record is cancelled or its
                retries are exhausted.
        """
        recording = await self.recordings.get(recording_id)
        if recording is None:
            raise PreconditionError("Recording not found", recording_id=recording_id)

        analysis = recording.analysis
        if analysis.status in (AnalysisStatus.COMPLETED, AnalysisStatus.PROCESSING):
            logger.info(
                "Analysis already %s; trigger ignored",
                analysis.status.value,
                extra={"recording_id": recording_id},
            )
            return analysis

        if analysis.status is AnalysisStatus.CANCELLED:
            raise AnalysisRejectedError(
                "Analysis was cancelled after maximum retries",
                recording_id=recording_id,
            )

        if analysis.status is AnalysisStatus.FAILED:
            if not self.retry_policy.can_retry(analysis.retry_count):
                raise AnalysisRejectedError(
                    f"Maximum retry attempts ({self.retry_policy.max_retries}) exceeded",
                    recording_id=recording_id,
                )
            reopened = await self.recordings.update_analysis(
                recording_id,
                state.reopen(analysis, self.retry_policy, recording_id),
                expected=AnalysisStatus.FAILED,
            )
            if reopened is None:
                current = await self.recordings.get(recording_id)
                return current.analysis if current else analysis
            analysis = reopened

        await self.schedule_analysis(recording_id, priority=PRIORITY_HIGH)
        return analysis

    async def analyze_recording(self, job: Job) -> AnalysisRecord | None:
        """Execute one "analyze-audio" job.

        Safe to re-execute: completed, cancelled, and failed records are
        left untouched, and a processing record is only taken over by the
        job that marked it.

        Returns:
            The persisted analysis record, or None if the record changed
            concurrently and nothing was done.

        Raises:
            PreconditionError: If required data is missing (no retry consumed).
            PipelineError: If the attempt failed after state was persisted.
            LeaseRetainedError: If the failure could not be persisted while
                the record was processing; the job is left for re-delivery.
        """
        recording_id = job.payload.get("recording_id")
        if not recording_id:
            raise PreconditionError("Job payload is missing 'recording_id'")

        recording = await self.recordings.get(recording_id)
        if recording is None:
            error = PreconditionError("Recording not found", recording_id=recording_id)
            self._emit_metrics(recording_id, job, "failed", 0, error=error)
            raise error

        analysis = recording.analysis
        if self._should_skip(analysis, job):
            logger.info(
                "Skipping analysis job %s: record is %s",
                job.id,
                analysis.status.value,
                extra={"recording_id": recording_id, "job_id": job.id},
            )
            return analysis

        try:
            check_preconditions(recording)
        except PreconditionError as exc:
            await self._fail_permanently(recording_id, analysis, job, exc)
            raise

        processing = await self.recordings.update_analysis(
            recording_id,
            state.start_processing(analysis, job.id, recording_id),
            expected=analysis.status,
        )
        if processing is None:
            logger.info(
                "Analysis record changed concurrently; job %s does nothing",
                job.id,
                extra={"recording_id": recording_id, "job_id": job.id},
            )
            return None

        timer = StageTimer("predict")
        history: list[HistoryEntry] = []
        try:
            if not await self.predictor.is_available():
                raise ServiceUnavailableError(
                    "Prediction service is not available", recording_id=recording_id
                )
            audio = await _fetch_with_retry(self.audio_storage, recording.audio_key)
            history = await self._build_history(recording)
            request = PredictionRequest(
                audio=audio,
                filename=recording.audio_key,
                date_of_birth=recording.birth_date,
                age_in_days=recording.age_in_days(self.clock()),
                baby_id=recording.baby_id,
                history=history,
            )
            with timer:
                prediction = await self.predictor.predict(request)
            completed = await self._complete(recording_id, processing, prediction, timer)
        except PreconditionError as exc:
            await self._fail_permanently(recording_id, processing, job, exc)
            raise
        except Exception as exc:
            await self._fail_transiently(recording_id, processing, job, exc, timer, history)
            raise

        if completed is not None:
            self._emit_metrics(
                recording_id,
                job,
                "completed",
                completed.retry_count,
                timer=timer,
                prediction=prediction,
                history_size=len(history),
            )
        return completed

    @staticmethod
    def _should_skip(analysis: AnalysisRecord, job: Job) -> bool:
        if analysis.status in state.TERMINAL_STATUSES:
            return True
        if analysis.status is AnalysisStatus.FAILED:
            return True
        return (
            analysis.status is AnalysisStatus.PROCESSING
            and analysis.processing_job_id != job.id
        )

    async def _build_history(self, recording: Recording) -> list[HistoryEntry]:
        if not recording.baby_id:
            return []
        recent = await self.recordings.recent_completed(
            recording.baby_id, recording.id, HISTORY_WINDOW
        )
        history = []
        for prior in recent:
            result = prior.analysis.result
            if result is None:
                continue
            when = prior.recorded_at or prior.analysis.analyzed_at
            history.append(
                HistoryEntry(
                    prediction=result.prediction,
                    confidence=result.confidence,
                    timestamp=when.isoformat() if when else "",
                    context=prior.context,
                )
            )
        return history[:HISTORY_WINDOW]

    async def _complete(
        self,
        recording_id: str,
        processing: AnalysisRecord,
        prediction: Prediction,
        timer: StageTimer,
    ) -> AnalysisRecord | None:
        result = AnalysisResult(
            prediction=prediction.prediction,
            confidence=prediction.confidence,
            all_predictions=prediction.all_predictions,
            model_version=prediction.model_version,
            processing_time_ms=timer.duration_ms,
            feature_shape=prediction.feature_shape,
            service_processing_time=prediction.processing_time,
        )
        changes = state.complete(processing, result, self.clock(), recording_id)
        completed = await self.recordings.update_analysis(
            recording_id, changes, expected=AnalysisStatus.PROCESSING
        )
        if completed is None:
            logger.warning(
                "Analysis record left processing before completion was saved",
                extra={"recording_id": recording_id},
            )
            return None
        logger.info(
            "Analysis completed: %s (%.3f)",
            result.prediction,
            result.confidence,
            extra={
                "recording_id": recording_id,
                "stage": "predict",
                "duration_seconds": timer.duration_seconds,
            },
        )
        return completed

    async def _persist(
        self,
        recording_id: str,
        changes: dict,
        expected: AnalysisStatus,
        exc: BaseException,
    ) -> AnalysisRecord | None:
        """Write a failure state after an attempt.

        Returns:
            The updated record, or None if the record had already moved
            on or could not be written while it was not processing.

        Raises:
            LeaseRetainedError: If the write failed while the record is
                processing; only re-delivery of this job can take it over.
        """
        try:
            return await self.recordings.update_analysis(
                recording_id, changes, expected=expected
            )
        except PipelineError as store_exc:
            logger.error(
                "Could not persist analysis state: %s",
                store_exc,
                exc_info=True,
                extra={"recording_id": recording_id, "error": str(store_exc)},
            )
            if expected is AnalysisStatus.PROCESSING:
                raise LeaseRetainedError(
                    f"Analysis state not saved after failed attempt: {exc}",
                    recording_id=recording_id,
                ) from store_exc
            return None

    async def _fail_permanently(
        self,
        recording_id: str,
        analysis: AnalysisRecord,
        job: Job,
        exc: PreconditionError,
    ) -> None:
        changes = state.record_permanent_failure(analysis, str(exc), recording_id)
        try:
            await self._persist(recording_id, changes, analysis.status, exc)
        except LeaseRetainedError:
            self._emit_metrics(
                recording_id, job, "redelivering", analysis.retry_count, error=exc
            )
            raise
        logger.error(
            "Analysis failed permanently: %s",
            exc,
            extra={"recording_id": recording_id, "job_id": job.id, "error": str(exc)},
        )
        self._emit_metrics(recording_id, job, "failed", analysis.retry_count, error=exc)

    async def _fail_transiently(
        self,
        recording_id: str,
        processing: AnalysisRecord,
        job: Job,
        exc: Exception,
        timer: StageTimer,
        history: list[HistoryEntry],
    ) -> None:
        outcome = state.record_transient_failure(
            processing, str(exc), self.clock(), self.retry_policy, recording_id
        )
        try:
            persisted = await self._persist(
                recording_id, outcome.changes, AnalysisStatus.PROCESSING, exc
            )
        except LeaseRetainedError:
            self._emit_metrics(
                recording_id,
                job,
                "redelivering",
                processing.retry_count,
                timer=timer,
                history_size=len(history),
                error=exc,
            )
            raise

        if persisted is None:
            logger.warning(
                "Analysis record left processing before the failure was saved; "
                "no retry scheduled",
                extra={"recording_id": recording_id, "job_id": job.id, "error": str(exc)},
            )
            self._emit_metrics(
                recording_id,
                job,
                "superseded",
                processing.retry_count,
                timer=timer,
                history_size=len(history),
                error=exc,
            )
            return

        retry_count = persisted.retry_count
        if outcome.will_retry:
            logger.warning(
                "Analysis attempt failed (%d/%d); retrying in %.0fs: %s",
                retry_count,
                self.retry_policy.max_retries,
                outcome.retry_delay_seconds,
                exc,
                extra={"recording_id": recording_id, "job_id": job.id, "error": str(exc)},
            )
            await self.scheduler.enqueue_in(
                JobKind.ANALYZE_AUDIO,
                {"recording_id": recording_id},
                outcome.retry_delay_seconds,
            )
            status = "retrying"
        else:
            logger.error(
                "Analysis failed after %d retries: %s",
                retry_count,
                exc,
                extra={"recording_id": recording_id, "job_id": job.id, "error": str(exc)},
            )
            status = "failed"

        self._emit_metrics(
            recording_id,
            job,
            status,
            retry_count,
            timer=timer,
            history_size=len(history),
            error=exc,
        )

    @staticmethod
    def _emit_metrics(
        recording_id: str,
        job: Job,
        status: str,
        retry_count: int,
        timer: StageTimer | None = None,
        prediction: Prediction | None = None,
        history_size: int = 0,
        error: BaseException | None = None,
    ) -> None:
        log_analysis_metrics(
            AnalysisMetrics(
                recording_id=recording_id,
                job_id=job.id,
                status=status,
                retry_count=retry_count,
                processing_time_ms=timer.duration_ms if timer else 0.0,
                prediction=prediction.prediction if prediction else None,
                confidence=prediction.confidence if prediction else None,
                model_version=prediction.model_version if prediction else None,
                history_size=history_size,
                error_type=type(error).__name__ if error else None,
                error_message=str(error) if error else None,
            )
        )

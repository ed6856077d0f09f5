"""Analysis status state machine.

Each builder validates a transition against ALLOWED_TRANSITIONS and
returns the field changes to persist through the entity store's atomic
update. Builders never mutate the record they are given.

    pending    -> processing | failed
    processing -> processing (re-delivered job) | completed | pending | failed
    failed     -> pending | cancelled
    completed, cancelled: terminal
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from cry_analysis.analysis.models import AnalysisRecord, AnalysisResult, AnalysisStatus
from cry_analysis.utils.errors import InvalidTransitionError
from cry_analysis.utils.retry import RetryPolicy

CANCELLED_NOTE = "Analysis cancelled after maximum retries"

ALLOWED_TRANSITIONS: dict[AnalysisStatus, frozenset[AnalysisStatus]] = {
    AnalysisStatus.PENDING: frozenset(
        {AnalysisStatus.PROCESSING, AnalysisStatus.FAILED}
    ),
    AnalysisStatus.PROCESSING: frozenset(
        {
            AnalysisStatus.PROCESSING,
            AnalysisStatus.COMPLETED,
            AnalysisStatus.PENDING,
            AnalysisStatus.FAILED,
        }
    ),
    AnalysisStatus.FAILED: frozenset(
        {AnalysisStatus.PENDING, AnalysisStatus.CANCELLED}
    ),
    AnalysisStatus.COMPLETED: frozenset(),
    AnalysisStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({AnalysisStatus.COMPLETED, AnalysisStatus.CANCELLED})


@dataclass
class FailureOutcome:
    """Changes to persist after a transient failure.

    retry_delay_seconds is None when the retry budget is exhausted and
    the record was moved to FAILED.
    """

    changes: dict[str, Any]
    retry_delay_seconds: float | None

    @property
    def will_retry(self) -> bool:
        return self.retry_delay_seconds is not None


def can_transition(current: AnalysisStatus, target: AnalysisStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(
    current: AnalysisStatus,
    target: AnalysisStatus,
    recording_id: str | None = None,
) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value, recording_id)


def start_processing(
    record: AnalysisRecord, job_id: str, recording_id: str | None = None
) -> dict[str, Any]:
    check_transition(record.status, AnalysisStatus.PROCESSING, recording_id)
    return {"status": AnalysisStatus.PROCESSING, "processing_job_id": job_id}


def complete(
    record: AnalysisRecord,
    result: AnalysisResult,
    now: datetime,
    recording_id: str | None = None,
) -> dict[str, Any]:
    check_transition(record.status, AnalysisStatus.COMPLETED, recording_id)
    return {
        "status": AnalysisStatus.COMPLETED,
        "result": result,
        "analyzed_at": now,
        "last_error": None,
        "processing_job_id": None,
    }


def record_transient_failure(
    record: AnalysisRecord,
    error: str,
    now: datetime,
    policy: RetryPolicy,
    recording_id: str | None = None,
) -> FailureOutcome:
    """Consume one retry and decide between rescheduling and failing.

    The counter is incremented first; while it stays below the cap the
    record returns to PENDING with a backoff delay, otherwise it is
    FAILED and no further attempt is scheduled automatically.
    """
    retry_count = policy.next_retry_count(record.retry_count)
    changes: dict[str, Any] = {
        "retry_count": retry_count,
        "last_retry_at": now,
        "last_error": error,
        "processing_job_id": None,
    }
    if policy.can_retry(retry_count):
        check_transition(record.status, AnalysisStatus.PENDING, recording_id)
        changes["status"] = AnalysisStatus.PENDING
        return FailureOutcome(changes, policy.backoff_delay(retry_count))

    check_transition(record.status, AnalysisStatus.FAILED, recording_id)
    changes["status"] = AnalysisStatus.FAILED
    return FailureOutcome(changes, None)


def record_permanent_failure(
    record: AnalysisRecord, error: str, recording_id: str | None = None
) -> dict[str, Any]:
    """Fail without consuming a retry (missing prerequisite data)."""
    check_transition(record.status, AnalysisStatus.FAILED, recording_id)
    return {
        "status": AnalysisStatus.FAILED,
        "last_error": error,
        "processing_job_id": None,
    }


def reopen(
    record: AnalysisRecord, policy: RetryPolicy, recording_id: str | None = None
) -> dict[str, Any]:
    """Move a FAILED record back to PENDING for a manual re-trigger."""
    check_transition(record.status, AnalysisStatus.PENDING, recording_id)
    if not policy.can_retry(record.retry_count):
        raise InvalidTransitionError(
            record.status.value,
            f"{AnalysisStatus.PENDING.value} (retries exhausted)",
            recording_id,
        )
    return {"status": AnalysisStatus.PENDING}

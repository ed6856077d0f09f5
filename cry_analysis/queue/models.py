"""Job data models for the durable queue."""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

PRIORITY_HIGH = 10
PRIORITY_NORMAL = 0
PRIORITY_LOW = -10


class JobKind:
    """Job kind discriminators used by the pipeline."""

    ANALYZE_AUDIO = "analyze-audio"
    CLEANUP_FAILED = "cleanup-failed"
    CLEANUP_TEMP_FILES = "cleanup-temp-files"
    HEALTH_CHECK = "health-check"


class JobState(str, Enum):
    """Persistence state. A QUEUED job with an active lease is running."""

    QUEUED = "queued"
    COMPLETED = "completed"
    FAILED = "failed"


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class Job:
    """A unit of scheduled work.

    lease_owner and lease_expires_at are set while a worker holds the
    job and cleared on release. Recurring jobs (recurrence_seconds set)
    stay QUEUED and are re-armed instead of finishing.
    """

    kind: str
    payload: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    priority: int = PRIORITY_NORMAL
    scheduled_at: datetime = field(default_factory=utc_now)
    created_at: datetime = field(default_factory=utc_now)
    state: JobState = JobState.QUEUED
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    last_finished_at: datetime | None = None
    fail_count: int = 0
    last_error: str | None = None
    recurrence_seconds: float | None = None

    @property
    def is_recurring(self) -> bool:
        return self.recurrence_seconds is not None

    def has_active_lease(self, now: datetime) -> bool:
        return (
            self.lease_owner is not None
            and self.lease_expires_at is not None
            and self.lease_expires_at > now
        )

    def is_claimable(self, now: datetime) -> bool:
        return (
            self.state is JobState.QUEUED
            and self.scheduled_at <= now
            and not self.has_active_lease(now)
        )

    def matches(self, match: dict[str, Any], kind: str | None = None) -> bool:
        if kind is not None and self.kind != kind:
            return False
        return all(self.payload.get(key) == value for key, value in match.items())

    def sort_key(self) -> tuple[int, datetime, datetime]:
        """Claim order: highest priority first, then earliest scheduled."""
        return (-self.priority, self.scheduled_at, self.created_at)


def next_run_at(job: Job, now: datetime) -> datetime:
    """Advance a recurring job by whole intervals until it lies after now.

    A worker that was down for several intervals resumes on the original
    cadence instead of replaying every missed run.
    """
    if job.recurrence_seconds is None:
        raise ValueError(f"Job {job.id} is not recurring")
    interval = timedelta(seconds=job.recurrence_seconds)
    candidate = job.scheduled_at + interval
    if candidate <= now:
        missed = math.floor((now - candidate) / interval) + 1
        candidate += interval * missed
    return candidate


@dataclass
class JobStats:
    """Job counts for observability."""

    total: int = 0
    running: int = 0
    failed: int = 0
    scheduled: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "running": self.running,
            "failed": self.failed,
            "scheduled": self.scheduled,
        }

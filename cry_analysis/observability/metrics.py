"""Analysis metrics collection and reporting.

Provides the AnalysisMetrics dataclass emitted once per analysis
attempt, StageTimer for measuring the remote prediction call, and
emitters that write each metric as a single structured JSON line to
stdout for log-based ingestion.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any


@dataclass
class AnalysisMetrics:
    """All metrics collected for a single analysis attempt."""

    recording_id: str
    job_id: str
    status: str
    retry_count: int
    processing_time_ms: float = 0.0
    prediction: str | None = None
    confidence: float | None = None
    model_version: str | None = None
    history_size: int = 0
    error_type: str | None = None
    error_message: str | None = None


class StageTimer:
    """Context manager that records wall-clock duration of a stage.

    Usage:
        timer = StageTimer("predict")
        with timer:
            do_work()
        print(timer.duration_seconds)
    """

    def __init__(self, stage_name: str) -> None:
        self.stage_name = stage_name
        self.start_time: datetime | None = None
        self.end_time: datetime | None = None
        self.duration_seconds: float = 0.0
        self._mono_start: float = 0.0

    def __enter__(self) -> StageTimer:
        self.start_time = datetime.now(UTC)
        self._mono_start = time.monotonic()
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        elapsed = time.monotonic() - self._mono_start
        self.end_time = datetime.now(UTC)
        self.duration_seconds = elapsed

    @property
    def duration_ms(self) -> float:
        return self.duration_seconds * 1000.0


def log_analysis_metrics(metrics: AnalysisMetrics) -> None:
    """Emit analysis metrics as a single structured JSON line to stdout.

    Args:
        metrics: Populated AnalysisMetrics dataclass.
    """
    entry = {
        "timestamp": datetime.now(UTC).isoformat(),
        "severity": "INFO" if metrics.status != "failed" else "WARNING",
        "metric_type": "analysis_completion",
        **asdict(metrics),
    }
    print(json.dumps(entry))


def log_health_snapshot(snapshot: dict[str, Any], degraded: bool = False) -> None:
    """Emit a periodic health snapshot as a structured JSON line.

    Args:
        snapshot: Health data (service status, circuit state, job stats).
        degraded: Whether any dependency is unhealthy; raises severity.
    """
    entry = {
        "timestamp": datetime.now(UTC).isoformat(),
        "severity": "WARNING" if degraded else "INFO",
        "metric_type": "health_check",
        **snapshot,
    }
    print(json.dumps(entry, default=str))

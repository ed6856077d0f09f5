"""Analysis record data models.

The analysis record is the status-bearing projection of an audio
recording that this pipeline owns. The rest of the recording entity
(baby, audio object key, recording context) is read-only here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any


class AnalysisStatus(str, Enum):
    """Lifecycle states of one audio-analysis request."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _format_datetime(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _optional_float(value: Any) -> float | None:
    return float(value) if value is not None else None


@dataclass
class AnalysisResult:
    """Outcome of a successful prediction, stored on completed records.

    processing_time_ms is measured here around the /predict call;
    service_processing_time is what the service reported, if anything.
    """

    prediction: str
    confidence: float
    all_predictions: dict[str, float]
    model_version: str | None = None
    processing_time_ms: float = 0.0
    feature_shape: list[int] | None = None
    service_processing_time: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "prediction": self.prediction,
            "confidence": self.confidence,
            "all_predictions": dict(self.all_predictions),
            "model_version": self.model_version,
            "processing_time_ms": self.processing_time_ms,
            "feature_shape": self.feature_shape,
            "service_processing_time": self.service_processing_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalysisResult:
        return cls(
            prediction=data["prediction"],
            confidence=float(data["confidence"]),
            all_predictions={
                k: float(v) for k, v in (data.get("all_predictions") or {}).items()
            },
            model_version=data.get("model_version"),
            processing_time_ms=float(data.get("processing_time_ms") or 0.0),
            feature_shape=data.get("feature_shape"),
            service_processing_time=_optional_float(
                data.get("service_processing_time")
            ),
        )


@dataclass
class AnalysisRecord:
    """Mutable analysis state of one recording.

    result is set only when status is COMPLETED. processing_job_id
    identifies the job that marked the record PROCESSING, so a
    re-delivered lease for that job can take the record over.
    """

    status: AnalysisStatus = AnalysisStatus.PENDING
    retry_count: int = 0
    last_retry_at: datetime | None = None
    analyzed_at: datetime | None = None
    result: AnalysisResult | None = None
    last_error: str | None = None
    processing_job_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "retry_count": self.retry_count,
            "last_retry_at": _format_datetime(self.last_retry_at),
            "analyzed_at": _format_datetime(self.analyzed_at),
            "result": self.result.to_dict() if self.result else None,
            "last_error": self.last_error,
            "processing_job_id": self.processing_job_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalysisRecord:
        result = data.get("result")
        return cls(
            status=AnalysisStatus(data.get("status", "pending")),
            retry_count=int(data.get("retry_count") or 0),
            last_retry_at=_parse_datetime(data.get("last_retry_at")),
            analyzed_at=_parse_datetime(data.get("analyzed_at")),
            result=AnalysisResult.from_dict(result) if result else None,
            last_error=data.get("last_error"),
            processing_job_id=data.get("processing_job_id"),
        )


@dataclass
class Recording:
    """An audio recording as seen by the analysis pipeline.

    birth_date is the baby's date of birth, joined in by the entity
    store; it is required to compute the age at recording.
    """

    id: str
    baby_id: str | None
    audio_key: str | None
    birth_date: date | None = None
    recorded_at: datetime | None = None
    context: dict[str, Any] = field(default_factory=dict)
    analysis: AnalysisRecord = field(default_factory=AnalysisRecord)

    def age_in_days(self, at: datetime) -> int | None:
        """Baby's age in whole days at the time of recording."""
        if self.birth_date is None:
            return None
        reference = (self.recorded_at or at).date()
        return max((reference - self.birth_date).days, 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "baby_id": self.baby_id,
            "audio_key": self.audio_key,
            "birth_date": self.birth_date.isoformat() if self.birth_date else None,
            "recorded_at": _format_datetime(self.recorded_at),
            "context": dict(self.context),
            "analysis": self.analysis.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Recording:
        birth_date = data.get("birth_date")
        return cls(
            id=str(data["id"]),
            baby_id=data.get("baby_id"),
            audio_key=data.get("audio_key"),
            birth_date=date.fromisoformat(birth_date[:10]) if birth_date else None,
            recorded_at=_parse_datetime(data.get("recorded_at")),
            context=data.get("context") or {},
            analysis=AnalysisRecord.from_dict(data.get("analysis") or {}),
        )

"""Abstract prediction service interface and wire data models.

Concrete implementations (e.g., the HTTP PredictionClient) subclass
PredictionService. The pipeline depends only on this interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any


@dataclass
class HistoryEntry:
    """One prior completed prediction, sent as temporal context."""

    prediction: str
    confidence: float
    timestamp: str
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "prediction": self.prediction,
            "confidence": self.confidence,
            "timestamp": self.timestamp,
            "context": self.context,
        }


@dataclass
class PredictionRequest:
    """Everything the prediction service needs for one recording."""

    audio: bytes
    filename: str
    date_of_birth: date
    age_in_days: int | None = None
    baby_id: str | None = None
    history: list[HistoryEntry] = field(default_factory=list)


@dataclass
class Prediction:
    """A well-formed response from POST /predict."""

    prediction: str
    confidence: float
    all_predictions: dict[str, float]
    feature_shape: list[int] | None = None
    model_version: str | None = None
    processing_time: float | None = None

    @classmethod
    def from_response(cls, body: Any) -> Prediction:
        """Validate and convert a /predict JSON body.

        Raises:
            ValueError: If required fields are missing or out of range.
        """
        if not isinstance(body, dict):
            raise ValueError("Prediction response is not a JSON object")

        label = body.get("prediction")
        if not label or not isinstance(label, str):
            raise ValueError("Missing or invalid 'prediction' in response")

        confidence = body.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise ValueError("Missing or invalid 'confidence' in response")
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"'confidence' out of range: {confidence}")

        all_predictions = body.get("all_predictions") or {}
        if not isinstance(all_predictions, dict):
            raise ValueError("Invalid 'all_predictions' in response")

        processing_time = body.get("processing_time")
        return cls(
            prediction=label,
            confidence=float(confidence),
            all_predictions={k: float(v) for k, v in all_predictions.items()},
            feature_shape=body.get("feature_shape"),
            model_version=body.get("model_version"),
            processing_time=(
                float(processing_time) if processing_time is not None else None
            ),
        )


@dataclass
class ProbeResult:
    """Outcome of a health, readiness, or classes probe. Never raised."""

    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None


class PredictionService(ABC):
    """Abstract base class for prediction service clients."""

    @abstractmethod
    async def predict(self, request: PredictionRequest) -> Prediction:
        """Classify one recording.

        Raises:
            PreconditionError: If the request itself is unusable.
            ServiceUnavailableError: If the call was refused locally.
            PredictionError: If the remote call failed.
        """

    @abstractmethod
    async def is_available(self) -> bool:
        """True if the service is healthy, ready, and not circuit-broken."""

    @abstractmethod
    async def service_status(self) -> dict[str, Any]:
        """Detailed status for health reporting."""

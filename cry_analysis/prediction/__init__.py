"""Prediction service client guarded by a circuit breaker."""

from cry_analysis.prediction.circuit_breaker import CircuitBreaker, CircuitState
from cry_analysis.prediction.interface import (
    HistoryEntry,
    Prediction,
    PredictionRequest,
    PredictionService,
    ProbeResult,
)

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "HistoryEntry",
    "Prediction",
    "PredictionRequest",
    "PredictionService",
    "ProbeResult",
]

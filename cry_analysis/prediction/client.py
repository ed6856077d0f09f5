"""HTTP client for the external cry prediction service.

Every outbound request is gated by the CircuitBreaker and reports
exactly one success or failure back to it. Probes (/health, /ready,
/classes) use a short timeout and return ProbeResult; /predict uses a
longer timeout and raises on failure.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import posixpath
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

import httpx

from cry_analysis.prediction.circuit_breaker import CircuitBreaker, CircuitState
from cry_analysis.prediction.interface import (
    Prediction,
    PredictionRequest,
    PredictionService,
    ProbeResult,
)
from cry_analysis.utils.errors import (
    PipelineError,
    PreconditionError,
    PredictionError,
    ServiceUnavailableError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PROBE_TIMEOUT_SECONDS = 5.0
DEFAULT_PREDICT_TIMEOUT_SECONDS = 60.0
HISTORY_WINDOW = 10

AUDIO_CONTENT_TYPES: dict[str, str] = {
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
    ".m4a": "audio/mp4",
    ".flac": "audio/flac",
}


def _json_object(response: httpx.Response) -> dict[str, Any]:
    body = response.json()
    if not isinstance(body, dict):
        raise ValueError("Expected a JSON object")
    return body


def audio_content_type(filename: str) -> str:
    """Map an audio filename to its MIME type.

    Raises:
        PreconditionError: If the extension is not a supported format.
    """
    ext = posixpath.splitext(filename)[1].lower()
    content_type = AUDIO_CONTENT_TYPES.get(ext)
    if content_type is None:
        allowed = ", ".join(AUDIO_CONTENT_TYPES)
        raise PreconditionError(
            f"Unsupported audio format: '{ext or filename}'. Allowed: {allowed}",
            field="audio_key",
        )
    return content_type


class PredictionClient(PredictionService):
    """Circuit-broken httpx client for the prediction service.

    Reads configuration from environment variables:
        ML_SERVICE_URL, ML_PROBE_TIMEOUT_SECONDS, ML_PREDICT_TIMEOUT_SECONDS

    Args:
        base_url: Prediction service base URL.
        breaker: Shared CircuitBreaker (a default one is created if omitted).
        probe_timeout: Timeout in seconds for health/ready/classes.
        predict_timeout: Timeout in seconds for /predict.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str | None = None,
        breaker: CircuitBreaker | None = None,
        probe_timeout: float | None = None,
        predict_timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or os.environ.get("ML_SERVICE_URL", "")).rstrip("/")
        if not self.base_url:
            raise ValueError("ML_SERVICE_URL is required")

        self.breaker = breaker or CircuitBreaker()
        self.probe_timeout = probe_timeout or float(
            os.environ.get("ML_PROBE_TIMEOUT_SECONDS", DEFAULT_PROBE_TIMEOUT_SECONDS)
        )
        self.predict_timeout = predict_timeout or float(
            os.environ.get(
                "ML_PREDICT_TIMEOUT_SECONDS", DEFAULT_PREDICT_TIMEOUT_SECONDS
            )
        )
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def close(self) -> None:
        """Close the shared HTTP client and release connection pool."""
        await self._client.aclose()

    async def _call(
        self,
        method: str,
        path: str,
        timeout: float,
        parse: Callable[[httpx.Response], T],
        **kwargs: Any,
    ) -> T:
        """Perform one guarded request and report its outcome to the breaker.

        Raises:
            ServiceUnavailableError: If the breaker refuses the call.
            PredictionError: On transport error, non-2xx, or malformed body.
        """
        if not self.breaker.allow():
            retry_in = self.breaker.seconds_until_trial()
            raise ServiceUnavailableError(
                "Circuit breaker is OPEN. Service unavailable. "
                f"Retry in {retry_in:.0f} seconds.",
                retry_in_seconds=retry_in,
            )

        try:
            response = await self._client.request(
                method, path, timeout=timeout, **kwargs
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self.breaker.on_failure()
            status_code = exc.response.status_code
            logger.error(
                "Prediction service %s %s failed: HTTP %d (circuit %s)",
                method,
                path,
                status_code,
                self.breaker.state.value,
            )
            raise PredictionError(
                f"{method} {path} failed with status {status_code}",
                status_code=status_code,
            ) from exc
        except httpx.RequestError as exc:
            self.breaker.on_failure()
            logger.error(
                "Prediction service %s %s failed: %s (circuit %s)",
                method,
                path,
                exc,
                self.breaker.state.value,
            )
            raise PredictionError(
                f"{method} {path} failed: {type(exc).__name__}: {exc}"
            ) from exc
        except BaseException:
            # Cancelled mid-flight; an admitted call still reports an outcome.
            self.breaker.on_failure()
            raise

        try:
            result = parse(response)
        except (ValueError, KeyError, TypeError) as exc:
            self.breaker.on_failure()
            raise PredictionError(
                f"{method} {path} returned a malformed response: {exc}",
                status_code=response.status_code,
            ) from exc

        self.breaker.on_success()
        return result

    async def _probe(self, path: str) -> ProbeResult:
        try:
            data = await self._call("GET", path, self.probe_timeout, _json_object)
        except PipelineError as exc:
            return ProbeResult(success=False, error=str(exc))
        return ProbeResult(success=True, data=data)

    async def health_check(self) -> ProbeResult:
        return await self._probe("/health")

    async def readiness_check(self) -> ProbeResult:
        return await self._probe("/ready")

    async def list_classes(self) -> ProbeResult:
        return await self._probe("/classes")

    async def is_available(self) -> bool:
        """True only if the circuit admits calls and both probes pass.

        A circuit whose cooldown has elapsed is probed, which moves it to
        HALF_OPEN; a circuit still cooling down short-circuits to False
        without any network call.
        """
        if self.breaker.is_rejecting():
            return False

        health = await self.health_check()
        if not health.success or (health.data or {}).get("status") != "healthy":
            return False

        ready = await self.readiness_check()
        return ready.success and (ready.data or {}).get("ready") is True

    async def service_status(self) -> dict[str, Any]:
        """Fetch health, readiness, and classes concurrently."""
        health, ready, classes = await asyncio.gather(
            self.health_check(), self.readiness_check(), self.list_classes()
        )
        return {
            "available": health.success
            and self.breaker.state is not CircuitState.OPEN,
            "health": health.data,
            "ready": ready.data,
            "classes": classes.data,
            "base_url": self.base_url,
            "circuit_breaker": self.breaker.snapshot(),
            "timestamp": datetime.now(UTC).isoformat(),
        }

    async def predict(self, request: PredictionRequest) -> Prediction:
        """Submit audio and metadata to POST /predict.

        The audio format is validated before the breaker is consulted,
        so an unsupported file never counts against the service.

        Args:
            request: Audio bytes, birth date, and prior prediction history.

        Returns:
            The parsed Prediction.

        Raises:
            PreconditionError: If the audio format is unsupported.
            ServiceUnavailableError: If the circuit breaker refuses the call.
            PredictionError: If the request fails or the response is malformed.
        """
        content_type = audio_content_type(request.filename)

        data: dict[str, str] = {
            "date_of_birth": request.date_of_birth.isoformat(),
        }
        if request.age_in_days is not None:
            data["age_in_days"] = str(request.age_in_days)
        if request.baby_id:
            data["baby_id"] = request.baby_id
        history = request.history[:HISTORY_WINDOW]
        if history:
            data["history_data"] = json.dumps([entry.to_dict() for entry in history])

        files = {
            "audio": (
                posixpath.basename(request.filename),
                request.audio,
                content_type,
            ),
        }

        return await self._call(
            "POST",
            "/predict",
            self.predict_timeout,
            lambda response: Prediction.from_response(response.json()),
            data=data,
            files=files,
        )

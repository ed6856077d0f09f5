"""Tests for cry_analysis.prediction.client module."""

import asyncio
import json
from datetime import date

import httpx
import pytest

from cry_analysis.prediction.circuit_breaker import CircuitBreaker, CircuitState
from cry_analysis.prediction.client import PredictionClient, audio_content_type
from cry_analysis.prediction.interface import HistoryEntry, PredictionRequest
from cry_analysis.utils.errors import (
    PreconditionError,
    PredictionError,
    ServiceUnavailableError,
)

BASE_URL = "http://ml.example.com"

PREDICT_RESPONSE = {
    "all_predictions": {
        "belly_pain": 0.0002,
        "burping": 0.997,
        "discomfort": 0.0001,
        "hungry": 0.002,
        "tired": 0.0006,
    },
    "confidence": 0.997,
    "feature_shape": [1, 167],
    "prediction": "burping",
}


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class Recorder:
    """MockTransport handler that records requests and routes by path."""

    def __init__(self, routes: dict[str, object]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"error": "not found"})
        if isinstance(route, Exception):
            raise route
        if callable(route):
            return route(request)
        return route

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


def _client(routes, breaker=None):
    recorder = Recorder(routes)
    client = PredictionClient(
        base_url=BASE_URL,
        breaker=breaker or CircuitBreaker(failure_threshold=2, clock=FakeClock()),
        transport=httpx.MockTransport(recorder),
    )
    return client, recorder


def _request(**overrides) -> PredictionRequest:
    fields = {
        "audio": b"RIFF....WAVE",
        "filename": "recordings/baby-1/rec-1.wav",
        "date_of_birth": date(2026, 1, 1),
        "age_in_days": 30,
        "baby_id": "baby-1",
    }
    fields.update(overrides)
    return PredictionRequest(**fields)


class TestInit:
    """Tests for PredictionClient configuration."""

    def test_requires_base_url(self, monkeypatch):
        monkeypatch.delenv("ML_SERVICE_URL", raising=False)
        with pytest.raises(ValueError, match="ML_SERVICE_URL"):
            PredictionClient()

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("ML_SERVICE_URL", "http://env.example.com/")
        monkeypatch.setenv("ML_PREDICT_TIMEOUT_SECONDS", "90")
        client = PredictionClient()
        assert client.base_url == "http://env.example.com"
        assert client.predict_timeout == 90.0
        assert client.probe_timeout == 5.0


class TestAudioContentType:
    """Tests for audio format validation."""

    @pytest.mark.parametrize(
        ("filename", "expected"),
        [
            ("a.wav", "audio/wav"),
            ("a.MP3", "audio/mpeg"),
            ("dir/a.m4a", "audio/mp4"),
            ("a.flac", "audio/flac"),
        ],
    )
    def test_supported_formats(self, filename, expected):
        assert audio_content_type(filename) == expected

    @pytest.mark.parametrize("filename", ["notes.txt", "audio.xyz", "noextension"])
    def test_unsupported_formats(self, filename):
        with pytest.raises(PreconditionError, match="Unsupported audio format"):
            audio_content_type(filename)


class TestProbes:
    """Tests for health, readiness, and classes probes."""

    async def test_health_check_success(self):
        body = {"status": "healthy", "model_loaded": True, "version": "1.0.0"}
        client, _ = _client({"/health": httpx.Response(200, json=body)})

        result = await client.health_check()

        assert result.success
        assert result.data == body

    async def test_health_check_service_error(self):
        client, _ = _client({"/health": httpx.Response(503, json={"error": "down"})})

        result = await client.health_check()

        assert not result.success
        assert "503" in result.error

    async def test_readiness_network_error(self):
        client, _ = _client({"/ready": httpx.ConnectError("ECONNREFUSED")})

        result = await client.readiness_check()

        assert not result.success
        assert "ECONNREFUSED" in result.error

    async def test_list_classes(self):
        body = {"classes": ["burping", "hungry"], "total_classes": 2}
        client, _ = _client({"/classes": httpx.Response(200, json=body)})

        result = await client.list_classes()

        assert result.success
        assert result.data["classes"] == ["burping", "hungry"]

    async def test_non_object_body_is_failure(self):
        client, _ = _client({"/health": httpx.Response(200, text="<html>error</html>")})

        result = await client.health_check()

        assert not result.success
        assert "malformed" in result.error


class TestIsAvailable:
    """Tests for is_available()."""

    async def test_available_when_healthy_and_ready(self):
        client, _ = _client(
            {
                "/health": httpx.Response(200, json={"status": "healthy"}),
                "/ready": httpx.Response(200, json={"ready": True}),
            }
        )
        assert await client.is_available()

    async def test_unavailable_when_unhealthy(self):
        client, recorder = _client(
            {"/health": httpx.Response(503, json={"status": "unhealthy"})}
        )
        assert not await client.is_available()
        assert recorder.paths() == ["/health"]

    async def test_unavailable_when_not_ready(self):
        client, _ = _client(
            {
                "/health": httpx.Response(200, json={"status": "healthy"}),
                "/ready": httpx.Response(200, json={"ready": False}),
            }
        )
        assert not await client.is_available()

    async def test_open_circuit_makes_no_network_call(self):
        breaker = CircuitBreaker(failure_threshold=1, clock=FakeClock())
        breaker.on_failure()
        client, recorder = _client({}, breaker=breaker)

        assert not await client.is_available()
        assert recorder.requests == []

    async def test_elapsed_cooldown_probes_half_open(self):
        clock = FakeClock()
        breaker = CircuitBreaker(
            failure_threshold=1, success_threshold=2, cooldown_seconds=60, clock=clock
        )
        breaker.on_failure()
        clock.now = 61.0
        client, _ = _client(
            {
                "/health": httpx.Response(200, json={"status": "healthy"}),
                "/ready": httpx.Response(200, json={"ready": True}),
            },
            breaker=breaker,
        )

        assert await client.is_available()
        assert breaker.state is CircuitState.CLOSED


class TestPredict:
    """Tests for predict()."""

    async def test_predict_success(self):
        client, recorder = _client({"/predict": httpx.Response(200, json=PREDICT_RESPONSE)})

        prediction = await client.predict(_request())

        assert prediction.prediction == "burping"
        assert prediction.confidence > 0.9
        assert prediction.feature_shape == [1, 167]
        request = recorder.requests[0]
        assert request.method == "POST"
        assert "multipart/form-data" in request.headers["content-type"]

    async def test_predict_sends_form_fields(self):
        history = [
            HistoryEntry("hungry", 0.8, f"2026-01-{day:02d}T00:00:00+00:00")
            for day in range(1, 15)
        ]
        client, recorder = _client({"/predict": httpx.Response(200, json=PREDICT_RESPONSE)})

        await client.predict(_request(history=history))

        body = recorder.requests[0].content
        assert b'name="date_of_birth"' in body
        assert b"2026-01-01" in body
        assert b'name="age_in_days"' in body
        assert b'name="baby_id"' in body
        assert b'name="audio"; filename="rec-1.wav"' in body
        assert b"Content-Type: audio/wav" in body
        start = body.index(b'name="history_data"')
        payload = body[start:].split(b"\r\n\r\n", 1)[1].split(b"\r\n--", 1)[0]
        assert len(json.loads(payload)) == 10

    async def test_predict_omits_optional_fields(self):
        client, recorder = _client({"/predict": httpx.Response(200, json=PREDICT_RESPONSE)})

        await client.predict(_request(baby_id=None, history=[]))

        body = recorder.requests[0].content
        assert b'name="baby_id"' not in body
        assert b'name="history_data"' not in body

    async def test_unsupported_format_makes_no_call(self):
        client, recorder = _client({})

        with pytest.raises(PreconditionError):
            await client.predict(_request(filename="notes.txt"))

        assert recorder.requests == []
        assert client.breaker.failure_count == 0

    async def test_http_error_counts_as_failure(self):
        client, _ = _client({"/predict": httpx.Response(500, json={"error": "x"})})

        with pytest.raises(PredictionError, match="status 500") as exc_info:
            await client.predict(_request())

        assert exc_info.value.status_code == 500
        assert client.breaker.failure_count == 1

    async def test_malformed_body_counts_as_failure(self):
        client, _ = _client({"/predict": httpx.Response(200, json={"confidence": 0.4})})

        with pytest.raises(PredictionError, match="malformed"):
            await client.predict(_request())

        assert client.breaker.failure_count == 1

    async def test_cancelled_call_counts_as_failure(self):
        started = asyncio.Event()

        async def hang(request):
            started.set()
            await asyncio.Event().wait()

        breaker = CircuitBreaker(failure_threshold=2, clock=FakeClock())
        client = PredictionClient(
            base_url=BASE_URL, breaker=breaker, transport=httpx.MockTransport(hang)
        )

        task = asyncio.create_task(client.predict(_request()))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert breaker.failure_count == 1
        assert breaker.state is CircuitState.CLOSED

    async def test_low_confidence_is_success(self):
        body = dict(PREDICT_RESPONSE, confidence=0.05)
        client, _ = _client({"/predict": httpx.Response(200, json=body)})
        client.breaker.on_failure()

        await client.predict(_request())

        assert client.breaker.failure_count == 0

    async def test_open_circuit_refuses_without_network(self):
        client, recorder = _client(
            {"/predict": httpx.ConnectError("refused")},
        )

        for _ in range(2):
            with pytest.raises(PredictionError):
                await client.predict(_request())
        assert client.breaker.state is CircuitState.OPEN

        with pytest.raises(ServiceUnavailableError, match="Circuit breaker is OPEN"):
            await client.predict(_request())
        assert len(recorder.requests) == 2


class TestServiceStatus:
    """Tests for service_status()."""

    async def test_comprehensive_status(self):
        client, _ = _client(
            {
                "/health": httpx.Response(200, json={"status": "healthy"}),
                "/ready": httpx.Response(200, json={"ready": True}),
                "/classes": httpx.Response(200, json={"classes": ["hungry"]}),
            }
        )

        status = await client.service_status()

        assert status["available"] is True
        assert status["health"] == {"status": "healthy"}
        assert status["ready"] == {"ready": True}
        assert status["classes"] == {"classes": ["hungry"]}
        assert status["circuit_breaker"]["state"] == "CLOSED"
        assert status["base_url"] == BASE_URL

    async def test_mixed_status(self):
        client, _ = _client(
            {
                "/health": httpx.Response(200, json={"status": "healthy"}),
                "/ready": httpx.Response(503, json={"ready": False}),
                "/classes": httpx.Response(500, json={"error": "x"}),
            }
        )
        client.breaker.failure_threshold = 5

        status = await client.service_status()

        assert status["available"] is True
        assert status["ready"] is None
        assert status["classes"] is None

"""Tests for cry_analysis.storage.recording_api module."""

import json
from datetime import UTC, datetime

import httpx
import pytest

from cry_analysis.analysis.models import AnalysisResult, AnalysisStatus
from cry_analysis.storage.recording_api import RecordingApiClient, serialize_changes
from cry_analysis.utils.errors import StorageError

API_URL = "https://app.example.com"

RECORDING_BODY = {
    "id": "rec-1",
    "baby_id": "baby-1",
    "audio_key": "recordings/baby-1/rec-1.wav",
    "birth_date": "2026-01-01",
    "recorded_at": "2026-02-01T08:00:00Z",
    "context": {"location": "crib"},
    "analysis": {"status": "pending", "retry_count": 0},
}


def _client(handler) -> tuple[RecordingApiClient, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def recording_handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = RecordingApiClient(
        api_url=API_URL,
        internal_secret="test-secret",
        transport=httpx.MockTransport(recording_handler),
    )
    return client, requests


class TestInit:
    """Tests for RecordingApiClient initialization."""

    def test_strips_trailing_slash(self):
        client = RecordingApiClient(api_url=f"{API_URL}/", internal_secret="s")
        assert client.api_url == API_URL

    def test_missing_url_raises_storage_error(self, monkeypatch):
        monkeypatch.delenv("RECORDING_API_URL", raising=False)
        with pytest.raises(StorageError, match="RECORDING_API_URL"):
            RecordingApiClient(api_url="", internal_secret="s")

    def test_missing_secret_raises_storage_error(self, monkeypatch):
        monkeypatch.delenv("RECORDING_API_SECRET", raising=False)
        with pytest.raises(StorageError, match="RECORDING_API_SECRET"):
            RecordingApiClient(api_url=API_URL, internal_secret="")


class TestGet:
    """Tests for RecordingApiClient.get()."""

    async def test_get_parses_recording(self):
        client, requests = _client(lambda r: httpx.Response(200, json=RECORDING_BODY))

        recording = await client.get("rec-1")

        assert recording.id == "rec-1"
        assert recording.birth_date.isoformat() == "2026-01-01"
        assert requests[0].url.path == "/internal/recordings/rec-1"
        assert requests[0].headers["X-Internal-Secret"] == "test-secret"

    async def test_get_404_returns_none(self):
        client, _ = _client(lambda r: httpx.Response(404, json={"error": "nope"}))
        assert await client.get("ghost") is None

    async def test_get_server_error_raises(self):
        client, _ = _client(lambda r: httpx.Response(500))
        with pytest.raises(StorageError, match="HTTP 500") as exc_info:
            await client.get("rec-1")
        assert exc_info.value.operation == "get_recording"

    async def test_get_network_error_raises(self):
        def fail(request):
            raise httpx.ConnectError("refused")

        client, _ = _client(fail)
        with pytest.raises(StorageError, match="refused"):
            await client.get("rec-1")

    async def test_get_malformed_body_raises(self):
        client, _ = _client(lambda r: httpx.Response(200, json={"baby_id": "x"}))
        with pytest.raises(StorageError, match="Malformed"):
            await client.get("rec-1")


class TestUpdateAnalysis:
    """Tests for RecordingApiClient.update_analysis()."""

    async def test_patch_sends_serialized_changes(self):
        client, requests = _client(
            lambda r: httpx.Response(200, json={"status": "processing", "retry_count": 0})
        )

        record = await client.update_analysis(
            "rec-1",
            {"status": AnalysisStatus.PROCESSING, "processing_job_id": "job-1"},
            expected=AnalysisStatus.PENDING,
        )

        assert record.status is AnalysisStatus.PROCESSING
        request = requests[0]
        assert request.method == "PATCH"
        assert request.url.path == "/internal/recordings/rec-1/analysis"
        assert json.loads(request.content) == {
            "changes": {"status": "processing", "processing_job_id": "job-1"},
            "expected_status": "pending",
        }

    async def test_conflict_returns_none(self):
        client, _ = _client(lambda r: httpx.Response(409, json={"error": "conflict"}))

        assert await client.update_analysis("rec-1", {}, AnalysisStatus.PENDING) is None


class TestQueries:
    """Tests for history and stale-cancel endpoints."""

    async def test_recent_completed(self):
        body = [dict(RECORDING_BODY, id=f"r{i}") for i in range(3)]
        client, requests = _client(lambda r: httpx.Response(200, json=body))

        recent = await client.recent_completed("baby-1", "rec-1", limit=2)

        assert [recording.id for recording in recent] == ["r0", "r1"]
        params = requests[0].url.params
        assert requests[0].url.path == "/internal/babies/baby-1/analyses"
        assert params["status"] == "completed"
        assert params["exclude"] == "rec-1"
        assert params["limit"] == "2"

    async def test_cancel_stale_failed(self):
        client, requests = _client(lambda r: httpx.Response(200, json={"modified": 4}))
        cutoff = datetime(2026, 2, 28, 12, 0, tzinfo=UTC)

        count = await client.cancel_stale_failed(3, cutoff, "note")

        assert count == 4
        assert json.loads(requests[0].content) == {
            "min_retry_count": 3,
            "last_retry_before": cutoff.isoformat(),
            "note": "note",
        }


class TestSerializeChanges:
    """Tests for change serialization."""

    def test_encodes_enums_datetimes_and_results(self):
        when = datetime(2026, 3, 1, tzinfo=UTC)
        result = AnalysisResult("hungry", 0.9, {"hungry": 0.9})

        encoded = serialize_changes(
            {"status": AnalysisStatus.COMPLETED, "analyzed_at": when, "result": result}
        )

        assert encoded["status"] == "completed"
        assert encoded["analyzed_at"] == when.isoformat()
        assert encoded["result"]["prediction"] == "hungry"
        json.dumps(encoded)

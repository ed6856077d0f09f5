"""Recording entity store client over the application's internal API.

The application server owns the recordings database; this service reads
recordings and writes analysis state through authenticated internal
endpoints. Analysis updates carry the expected status so the server can
apply them as a compare-and-set.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from enum import Enum
from typing import Any

import httpx

from cry_analysis.analysis.models import (
    AnalysisRecord,
    AnalysisResult,
    AnalysisStatus,
    Recording,
)
from cry_analysis.storage.recordings import RecordingStore
from cry_analysis.utils.errors import StorageError

logger = logging.getLogger(__name__)


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, AnalysisResult):
        return value.to_dict()
    return value


def serialize_changes(changes: dict[str, Any]) -> dict[str, Any]:
    """Convert analysis changes into a JSON-ready dict."""
    return {key: _encode(value) for key, value in changes.items()}


class RecordingApiClient(RecordingStore):
    """Entity store backed by the internal recordings API.

    Reads configuration from environment variables:
        RECORDING_API_URL, RECORDING_API_SECRET
    """

    def __init__(
        self,
        api_url: str | None = None,
        internal_secret: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = (api_url or os.environ.get("RECORDING_API_URL", "")).rstrip("/")
        self.internal_secret = internal_secret or os.environ.get(
            "RECORDING_API_SECRET", ""
        )

        if not self.api_url:
            raise StorageError("RECORDING_API_URL is required", operation="init")
        if not self.internal_secret:
            raise StorageError("RECORDING_API_SECRET is required", operation="init")

        self._client = httpx.AsyncClient(
            base_url=self.api_url, timeout=timeout, transport=transport
        )

    def _headers(self) -> dict[str, str]:
        """Build authentication headers for internal endpoints."""
        return {
            "X-Internal-Secret": self.internal_secret,
            "Content-Type": "application/json",
        }

    async def close(self) -> None:
        """Close the shared HTTP client and release connection pool."""
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        recording_id: str | None = None,
        allowed_statuses: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method, path, headers=self._headers(), **kwargs
            )
            if response.status_code in allowed_statuses:
                return response
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise StorageError(
                f"{operation} failed: HTTP {exc.response.status_code}",
                recording_id=recording_id,
                operation=operation,
            ) from exc
        except httpx.RequestError as exc:
            raise StorageError(
                f"{operation} failed: {exc}",
                recording_id=recording_id,
                operation=operation,
            ) from exc
        return response

    async def get(self, recording_id: str) -> Recording | None:
        """Fetch a recording with its baby's birth date joined in.

        Raises:
            StorageError: If the API call fails or returns malformed data.
        """
        response = await self._request(
            "GET",
            f"/internal/recordings/{recording_id}",
            "get_recording",
            recording_id=recording_id,
            allowed_statuses=(404,),
        )
        if response.status_code == 404:
            return None
        try:
            return Recording.from_dict(response.json())
        except (ValueError, KeyError, TypeError) as exc:
            raise StorageError(
                f"Malformed recording payload: {exc}",
                recording_id=recording_id,
                operation="get_recording",
            ) from exc

    async def update_analysis(
        self,
        recording_id: str,
        changes: dict[str, Any],
        expected: AnalysisStatus | None = None,
    ) -> AnalysisRecord | None:
        """PATCH the analysis record; 404 and 409 both mean not applied."""
        payload: dict[str, Any] = {"changes": serialize_changes(changes)}
        if expected is not None:
            payload["expected_status"] = expected.value

        response = await self._request(
            "PATCH",
            f"/internal/recordings/{recording_id}/analysis",
            "update_analysis",
            recording_id=recording_id,
            allowed_statuses=(404, 409),
            json=payload,
        )
        if response.status_code in (404, 409):
            logger.info(
                "Analysis update for %s not applied (HTTP %d)",
                recording_id,
                response.status_code,
                extra={"recording_id": recording_id},
            )
            return None
        try:
            return AnalysisRecord.from_dict(response.json())
        except (ValueError, KeyError, TypeError) as exc:
            raise StorageError(
                f"Malformed analysis payload: {exc}",
                recording_id=recording_id,
                operation="update_analysis",
            ) from exc

    async def recent_completed(
        self, baby_id: str, exclude_id: str, limit: int
    ) -> list[Recording]:
        response = await self._request(
            "GET",
            f"/internal/babies/{baby_id}/analyses",
            "recent_completed",
            recording_id=exclude_id,
            params={
                "status": AnalysisStatus.COMPLETED.value,
                "exclude": exclude_id,
                "limit": limit,
            },
        )
        try:
            return [Recording.from_dict(item) for item in response.json()][:limit]
        except (ValueError, KeyError, TypeError) as exc:
            raise StorageError(
                f"Malformed history payload: {exc}",
                recording_id=exclude_id,
                operation="recent_completed",
            ) from exc

    async def cancel_stale_failed(
        self, min_retry_count: int, last_retry_before: datetime, note: str
    ) -> int:
        response = await self._request(
            "POST",
            "/internal/analyses/cancel-stale",
            "cancel_stale_failed",
            json={
                "min_retry_count": min_retry_count,
                "last_retry_before": last_retry_before.isoformat(),
                "note": note,
            },
        )
        try:
            return int(response.json().get("modified", 0))
        except (ValueError, AttributeError, TypeError) as exc:
            raise StorageError(
                f"Malformed cancel response: {exc}",
                operation="cancel_stale_failed",
            ) from exc

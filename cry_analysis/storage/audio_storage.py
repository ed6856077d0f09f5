"""S3-compatible object storage for recorded audio.

Provides fetch_object() for the analysis handler and a sweep that
deletes stale temporary upload objects. Calls are synchronous boto3;
async callers run them via asyncio.to_thread.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from cry_analysis.utils.errors import AudioFetchError, PreconditionError, StorageError

logger = logging.getLogger(__name__)

MISSING_OBJECT_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


@dataclass
class CleanupResult:
    """Outcome of one temporary object sweep."""

    scanned: int = 0
    deleted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "scanned": self.scanned,
            "deleted": len(self.deleted),
            "errors": list(self.errors),
        }


class AudioStorage:
    """boto3 client for the audio bucket.

    Reads configuration from environment variables:
        S3_ENDPOINT, S3_BUCKET, S3_ACCESS_KEY_ID, S3_SECRET_ACCESS_KEY,
        S3_TEMP_PREFIX
    """

    def __init__(
        self,
        endpoint_url: str | None = None,
        bucket: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        temp_prefix: str | None = None,
    ) -> None:
        self.endpoint_url = endpoint_url or os.environ.get("S3_ENDPOINT", "")
        self.bucket = bucket or os.environ.get("S3_BUCKET", "")
        self.access_key_id = access_key_id or os.environ.get("S3_ACCESS_KEY_ID", "")
        self.secret_access_key = secret_access_key or os.environ.get(
            "S3_SECRET_ACCESS_KEY", ""
        )
        self.temp_prefix = temp_prefix or os.environ.get("S3_TEMP_PREFIX", "temp/")

        if not self.endpoint_url:
            raise StorageError("S3_ENDPOINT is required", operation="init")
        if not self.bucket:
            raise StorageError("S3_BUCKET is required", operation="init")

        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            region_name="auto",
        )

    def fetch_object(self, key: str) -> bytes:
        """Retrieve an audio object by key.

        Args:
            key: Object key, e.g. "recordings/{baby_id}/{recording_id}.wav".

        Returns:
            Raw bytes of the object.

        Raises:
            PreconditionError: If the object does not exist.
            AudioFetchError: If the object cannot be retrieved right now.
        """
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except ClientError as exc:
            error_code = exc.response.get("Error", {}).get("Code", "Unknown")
            if error_code in MISSING_OBJECT_CODES:
                raise PreconditionError(
                    f"Audio object '{key}' does not exist", field="audio_key"
                ) from exc
            raise AudioFetchError(
                f"Failed to fetch audio object '{key}': {error_code}", key=key
            ) from exc
        except BotoCoreError as exc:
            raise AudioFetchError(
                f"Failed to fetch audio object '{key}': {exc}", key=key
            ) from exc

    def cleanup_temp_objects(
        self, max_age_hours: float = 24.0, now: datetime | None = None
    ) -> CleanupResult:
        """Delete objects under the temp prefix older than max_age_hours.

        Per-object delete failures are collected rather than raised.

        Raises:
            StorageError: If listing the bucket fails.
        """
        cutoff = (now or datetime.now(UTC)) - timedelta(hours=max_age_hours)
        result = CleanupResult()
        paginator = self._client.get_paginator("list_objects_v2")

        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=self.temp_prefix):
                for obj in page.get("Contents", []):
                    result.scanned += 1
                    if obj["LastModified"] >= cutoff:
                        continue
                    key = obj["Key"]
                    try:
                        self._client.delete_object(Bucket=self.bucket, Key=key)
                        result.deleted.append(key)
                    except ClientError as exc:
                        error_code = exc.response.get("Error", {}).get("Code", "Unknown")
                        logger.warning("Failed to delete temp object %s: %s", key, error_code)
                        result.errors.append(f"{key}: {error_code}")
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(
                f"Failed to list temp objects under '{self.temp_prefix}': {exc}",
                operation="cleanup_temp_objects",
            ) from exc

        logger.info(
            "Temp cleanup scanned %d object(s), deleted %d, %d error(s)",
            result.scanned,
            len(result.deleted),
            len(result.errors),
        )
        return result

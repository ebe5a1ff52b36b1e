"""S3-compatible blob storage client for uploaded audio.

Locators have the form ``<bucket>/<key>``, so one client can read from
any bucket on the configured endpoint (Supabase Storage, Cloudflare R2,
or AWS S3 all speak this API).
"""

from __future__ import annotations

import logging
import os

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from transcription_worker.utils.errors import AudioFetchError, ConfigurationError

logger = logging.getLogger(__name__)


def parse_locator(locator: str) -> tuple[str, str]:
    """Split ``bucket/path/to/object`` into bucket and key.

    Raises:
        AudioFetchError: If the locator has no bucket or no key.
    """
    bucket, _, key = locator.strip("/").partition("/")
    if not bucket or not key:
        raise AudioFetchError(f"Invalid blob path: {locator}", key=locator)
    return bucket, key


class BlobClient:
    """S3-compatible client for audio downloads.

    Reads configuration from environment variables:
        BLOB_ENDPOINT_URL, BLOB_ACCESS_KEY_ID, BLOB_SECRET_ACCESS_KEY,
        BLOB_REGION
    """

    def __init__(
        self,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        region_name: str | None = None,
    ) -> None:
        self.endpoint_url = endpoint_url or os.environ.get("BLOB_ENDPOINT_URL", "")
        self.access_key_id = access_key_id or os.environ.get(
            "BLOB_ACCESS_KEY_ID", ""
        )
        self.secret_access_key = secret_access_key or os.environ.get(
            "BLOB_SECRET_ACCESS_KEY", ""
        )
        self.region_name = region_name or os.environ.get("BLOB_REGION", "auto")

        if not self.endpoint_url:
            raise ConfigurationError(
                "BLOB_ENDPOINT_URL is required", setting="BLOB_ENDPOINT_URL"
            )

        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
            region_name=self.region_name,
        )

    def fetch_object(self, locator: str) -> bytes:
        """Download an object by locator.

        Args:
            locator: ``<bucket>/<key>`` (e.g. "audio-uploads/org-1/job-1.m4a").

        Returns:
            Raw bytes of the object.

        Raises:
            AudioFetchError: If the locator is malformed or the object
                cannot be retrieved.
        """
        bucket, key = parse_locator(locator)
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
            return response["Body"].read()
        except ClientError as exc:
            error_code = exc.response.get("Error", {}).get("Code", "Unknown")
            raise AudioFetchError(
                f"Failed to fetch blob '{locator}': {error_code}",
                key=locator,
            ) from exc
        except BotoCoreError as exc:
            raise AudioFetchError(
                f"Failed to fetch blob '{locator}': {exc}",
                key=locator,
            ) from exc

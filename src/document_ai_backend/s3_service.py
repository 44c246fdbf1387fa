"""
S3 storage gateway for presigned transfer grants and worker object access.

This module provides functionality for:
- Issuing presigned PUT URLs so clients upload source documents directly
- Issuing presigned GET URLs so clients download results directly
- Reading inputs and writing results on behalf of the job worker

File bytes never pass through the API process. Grants are bound to a
single HTTP method and expire after ``grant_ttl`` seconds (default 300).
The S3 client is created at process start-up and injected, never held
in module state.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from botocore.exceptions import BotoCoreError, ClientError

from .errors import ProcessingError, TransientInfrastructureError
from .models import DownloadGrant, UploadGrant
from .utils import is_transient_client_error, sanitize_filename

logger = logging.getLogger(__name__)

DEFAULT_GRANT_TTL = 300

_MISSING_OBJECT_CODES = {"NoSuchKey", "NotFound", "404"}


class StorageGateway:
    """
    Gateway to the object store bucket holding uploads and results.

    Attributes:
        bucket: Bucket holding both uploads and outputs
        upload_prefix: Key prefix for client uploads
        output_prefix: Key prefix for worker results
        grant_ttl: Lifetime of presigned URLs in seconds
    """

    def __init__(
        self,
        client,
        bucket: str,
        upload_prefix: str = "uploads",
        output_prefix: str = "outputs",
        grant_ttl: int = DEFAULT_GRANT_TTL,
    ) -> None:
        if not bucket:
            raise ValueError("Storage bucket name is required")
        self._client = client
        self.bucket = bucket
        self.upload_prefix = upload_prefix.strip("/")
        self.output_prefix = output_prefix.strip("/")
        self.grant_ttl = grant_ttl

    def _expiry(self) -> datetime:
        return datetime.now(timezone.utc) + timedelta(seconds=self.grant_ttl)

    def _presign(self, operation: str, params: dict, http_method: str) -> str:
        try:
            return self._client.generate_presigned_url(
                operation,
                Params={"Bucket": self.bucket, **params},
                ExpiresIn=self.grant_ttl,
                HttpMethod=http_method,
            )
        except (BotoCoreError, ClientError) as exc:
            raise TransientInfrastructureError(f"Could not presign {operation}: {exc}") from exc

    def new_upload_key(self, file_name: str) -> str:
        return f"{self.upload_prefix}/{uuid4().hex}-{sanitize_filename(file_name)}"

    def output_key_for(self, job_id: str, extension: str) -> str:
        """Deterministic result key, so a repeated upload overwrites in place."""
        return f"{self.output_prefix}/{job_id}-result.{extension.lstrip('.')}"

    def issue_upload_grant(self, file_name: str, content_type: str) -> UploadGrant:
        """
        Generate a fresh upload key and a presigned PUT URL for it.

        Args:
            file_name: Client-supplied file name, sanitized into the key
            content_type: MIME type the upload must be sent with

        Returns:
            UploadGrant with the URL, the key to submit later and the expiry
        """
        key = self.new_upload_key(file_name)
        expires_at = self._expiry()
        url = self._presign("put_object", {"Key": key, "ContentType": content_type}, "PUT")
        logger.info(f"Issued upload grant for {key} (expires in {self.grant_ttl}s)")
        return UploadGrant(url=url, key=key, expires_at=expires_at)

    def issue_download_grant(self, key: str) -> DownloadGrant:
        """
        Generate a presigned GET URL for an existing object.

        Note:
            Anyone holding the URL can download the object until it expires.
        """
        expires_at = self._expiry()
        url = self._presign("get_object", {"Key": key}, "GET")
        logger.info(f"Issued download grant for {key} (expires in {self.grant_ttl}s)")
        return DownloadGrant(url=url, expires_at=expires_at)

    def fetch(self, key: str) -> bytes:
        """
        Read an object's bytes.

        Raises:
            ProcessingError: If the object does not exist
            TransientInfrastructureError: On throttling, 5xx or connection errors
        """
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in _MISSING_OBJECT_CODES:
                raise ProcessingError(f"Input object not found: {key}") from exc
            if is_transient_client_error(exc):
                raise TransientInfrastructureError(f"S3 get_object failed for {key}: {exc}") from exc
            raise ProcessingError(f"S3 get_object failed for {key}: {code}") from exc
        except BotoCoreError as exc:
            raise TransientInfrastructureError(f"S3 get_object failed for {key}: {exc}") from exc

    def store(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """
        Write ``data`` under ``key``, replacing any existing object.

        Returns:
            The key written
        """
        try:
            self._client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except ClientError as exc:
            if is_transient_client_error(exc):
                raise TransientInfrastructureError(f"S3 put_object failed for {key}: {exc}") from exc
            code = exc.response.get("Error", {}).get("Code")
            raise ProcessingError(f"S3 put_object failed for {key}: {code}") from exc
        except BotoCoreError as exc:
            raise TransientInfrastructureError(f"S3 put_object failed for {key}: {exc}") from exc
        logger.info(f"Stored {len(data)} bytes at s3://{self.bucket}/{key}")
        return key

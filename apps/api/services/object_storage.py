"""S3-compatible private object storage for uploaded files."""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

from core.config import settings
from core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


class ObjectStorageError(Exception):
    """Generic object storage failure."""


class ObjectNotFoundError(ObjectStorageError):
    """Raised when the object is already absent."""


class StorageService(Protocol):
    """Storage provider interface."""

    bucket_name: str

    def delete(self, key: str) -> None: ...
    def create_signed_url(self, key: str, ttl_s: int) -> str: ...


class S3StorageService:
    """S3/MinIO/R2-backed storage provider."""

    def __init__(
        self,
        bucket_name: str,
        endpoint_url: Optional[str],
        access_key: Optional[str],
        secret_key: Optional[str],
        region: str,
        timeout_s: int = 10,
        client: Any | None = None,
    ) -> None:
        self.bucket_name = bucket_name
        self.region = region
        if client is not None:
            self.client = client
            return

        import boto3
        from botocore.config import Config

        self.client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=Config(connect_timeout=timeout_s, read_timeout=timeout_s, retries={"max_attempts": 2}),
        )

    @staticmethod
    def _error_code(exc: Exception) -> str:
        response = getattr(exc, "response", None)
        if isinstance(response, dict):
            err = response.get("Error", {})
            if isinstance(err, dict):
                return str(err.get("Code", ""))
        return ""

    def delete(self, key: str) -> None:
        """
        Remove one object. Raises ObjectNotFoundError when the backend reports
        the key as absent, ObjectStorageError for anything else.
        """
        try:
            self.client.delete_object(Bucket=self.bucket_name, Key=key)
        except Exception as exc:
            if self._error_code(exc) in _MISSING_CODES:
                raise ObjectNotFoundError(key) from exc
            raise ObjectStorageError(f"Failed to delete object {key}") from exc

    def create_signed_url(self, key: str, ttl_s: int) -> str:
        try:
            url = self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket_name, "Key": key},
                ExpiresIn=int(ttl_s),
            )
        except Exception as exc:
            raise ObjectStorageError(f"Failed to sign object {key}") from exc
        if not url:
            raise ObjectStorageError(f"Storage returned no signed url for {key}")
        return str(url)


def remove_object(storage: StorageService, key: str) -> bool:
    """
    Delete `key`, treating "already absent" as success.

    Returns True when the object is gone afterwards; raises ObjectStorageError
    for real failures.
    """
    try:
        storage.delete(key)
    except ObjectNotFoundError:
        logger.info(f"Object already absent from storage: {key}")
    return True


def build_s3_storage() -> S3StorageService:
    """Construct the process-wide storage client from Settings, failing fast."""
    missing = [
        name
        for name, val in [("S3_ACCESS_KEY", settings.S3_ACCESS_KEY), ("S3_SECRET_KEY", settings.S3_SECRET_KEY)]
        if not val
    ]
    if missing:
        raise ConfigurationError(f"Object storage not configured (missing: {', '.join(missing)})")
    return S3StorageService(
        bucket_name=settings.STORAGE_BUCKET,
        endpoint_url=settings.S3_ENDPOINT_URL,
        access_key=settings.S3_ACCESS_KEY,
        secret_key=settings.S3_SECRET_KEY,
        region=settings.S3_REGION,
        timeout_s=settings.S3_TIMEOUT_S,
    )

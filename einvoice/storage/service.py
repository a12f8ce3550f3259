"""S3-compatible object storage for source documents and generated e-invoices.

Object layout in the bucket:
- ``sources/{invoice_id}/original{ext}``: uploaded invoice document
- ``outputs/{invoice_id}/{file_name}``: generated XML or Factur-X PDF

Based on MinIO Python SDK:
https://min.io/docs/minio/linux/developers/python/API.html
"""

import io
import logging
import mimetypes
from datetime import timedelta
from pathlib import PurePosixPath

from minio import Minio
from minio.error import S3Error
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from einvoice.shared.config import Settings
from einvoice.shared.errors import StorageError

logger = logging.getLogger(__name__)

# Transient failures worth another attempt
_RETRYABLE = (S3Error, Urllib3HTTPError)


class StorageResult(BaseModel):
    """Result of storage operation.

    Attributes:
        success: Whether operation succeeded
        object_name: Full object path in storage
        bucket: Bucket name
        error: Error message if operation failed
        etag: Object ETag (hash) if available
        size: Object size in bytes if available
    """

    success: bool
    object_name: str | None = None
    bucket: str | None = None
    error: str | None = None
    etag: str | None = None
    size: int | None = None


class PresignedUrlResult(BaseModel):
    """Result of presigned URL generation."""

    success: bool
    url: str | None = None
    expires_in_seconds: int | None = None
    error: str | None = None


def source_object_name(invoice_id: str, filename: str | None) -> str:
    suffix = PurePosixPath(filename or "").suffix.lower() or ".bin"
    return f"sources/{invoice_id}/original{suffix}"


def output_object_name(invoice_id: str, file_name: str) -> str:
    return f"outputs/{invoice_id}/{file_name}"


class StorageService:
    """MinIO-backed document store.

    Uploads report failures through StorageResult (callers degrade
    gracefully); downloads raise StorageError because a job cannot continue
    without its source document.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize storage service.

        Args:
            settings: Application settings with storage configuration
        """
        self.settings = settings
        self._client: Minio | None = None
        self._bucket_exists_cache: set[str] = set()

    def _get_client(self) -> Minio:
        """Get or create MinIO client (lazy initialization).

        Raises:
            ValueError: If storage credentials are not configured
        """
        if self._client is None:
            if not self.settings.storage_access_key:
                raise ValueError(
                    "Storage access key not configured. "
                    "Set APP_STORAGE_ACCESS_KEY environment variable."
                )
            if not self.settings.storage_secret_key:
                raise ValueError(
                    "Storage secret key not configured. "
                    "Set APP_STORAGE_SECRET_KEY environment variable."
                )

            self._client = Minio(
                endpoint=self.settings.storage_endpoint,
                access_key=self.settings.storage_access_key,
                secret_key=self.settings.storage_secret_key,
                secure=self.settings.storage_secure,
            )
            logger.info(f"MinIO client initialized for endpoint: {self.settings.storage_endpoint}")

        return self._client

    def is_available(self) -> bool:
        """True if storage is enabled and credentials are set."""
        if not self.settings.storage_enabled:
            return False
        return bool(self.settings.storage_access_key and self.settings.storage_secret_key)

    def health_check(self) -> bool:
        """Check if storage backend is reachable (used by /ready)."""
        if not self.is_available():
            return False
        try:
            self._get_client().list_buckets()
            return True
        except _RETRYABLE as e:
            logger.warning(f"Storage health check failed: {e}")
            return False

    def _ensure_bucket(self, bucket: str) -> None:
        if bucket in self._bucket_exists_cache:
            return
        client = self._get_client()
        if not client.bucket_exists(bucket):
            client.make_bucket(bucket)
            logger.info(f"Created bucket: {bucket}")
        self._bucket_exists_cache.add(bucket)

    @staticmethod
    def _detect_content_type(filename: str) -> str:
        if filename.endswith(".xml"):
            return "application/xml"
        content_type, _ = mimetypes.guess_type(filename)
        return content_type or "application/octet-stream"

    @retry(
        retry=retry_if_exception_type(_RETRYABLE),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        reraise=True,
    )
    def _put(self, bucket: str, object_name: str, data: bytes, content_type: str) -> str | None:
        self._ensure_bucket(bucket)
        result = self._get_client().put_object(
            bucket_name=bucket,
            object_name=object_name,
            data=io.BytesIO(data),
            length=len(data),
            content_type=content_type,
        )
        etag: str | None = result.etag
        return etag

    @retry(
        retry=retry_if_exception_type(Urllib3HTTPError),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        reraise=True,
    )
    def _get(self, bucket: str, object_name: str) -> bytes:
        response = self._get_client().get_object(bucket_name=bucket, object_name=object_name)
        try:
            data: bytes = response.read()
            return data
        finally:
            response.close()
            response.release_conn()

    def upload_bytes(
        self,
        data: bytes,
        object_name: str,
        content_type: str | None = None,
        bucket: str | None = None,
    ) -> StorageResult:
        """Upload bytes to storage.

        Args:
            data: Bytes to upload
            object_name: Target object name in storage
            content_type: MIME type (auto-detected if not provided)
            bucket: Target bucket (defaults to settings.storage_bucket)

        Returns:
            StorageResult with upload details
        """
        bucket = bucket or self.settings.storage_bucket
        content_type = content_type or self._detect_content_type(object_name)

        try:
            etag = self._put(bucket, object_name, data, content_type)
        except S3Error as e:
            logger.error(f"S3 error uploading {object_name}: {e}")
            return StorageResult(
                success=False,
                object_name=object_name,
                bucket=bucket,
                error=f"S3 error: {e.code} - {e.message}",
            )
        except (Urllib3HTTPError, ValueError) as e:
            logger.error(f"Error uploading {object_name}: {e}")
            return StorageResult(
                success=False, object_name=object_name, bucket=bucket, error=str(e)
            )

        logger.info(f"Uploaded {object_name} to {bucket} ({len(data)} bytes)")
        return StorageResult(
            success=True,
            object_name=object_name,
            bucket=bucket,
            etag=etag,
            size=len(data),
        )

    def download_bytes(self, object_name: str, bucket: str | None = None) -> bytes:
        """Download an object.

        Raises:
            StorageError: If the object is missing or the backend fails
        """
        bucket = bucket or self.settings.storage_bucket
        try:
            data = self._get(bucket, object_name)
        except S3Error as e:
            logger.error(f"S3 error downloading {object_name}: {e}")
            raise StorageError(
                f"Could not download {object_name}: {e.code}",
                details={"bucket": bucket, "object": object_name},
            ) from e
        except (Urllib3HTTPError, ValueError) as e:
            logger.error(f"Error downloading {object_name}: {e}")
            raise StorageError(f"Could not download {object_name}: {e}") from e

        logger.info(f"Downloaded {object_name} from {bucket} ({len(data)} bytes)")
        return data

    def get_presigned_url(
        self,
        object_name: str,
        bucket: str | None = None,
        expires_seconds: int = 3600,
    ) -> PresignedUrlResult:
        """Generate presigned URL for downloading a generated e-invoice.

        Args:
            object_name: Object name in storage
            bucket: Bucket name (defaults to settings.storage_bucket)
            expires_seconds: URL expiration time in seconds (default: 1 hour)
        """
        bucket = bucket or self.settings.storage_bucket
        try:
            url = self._get_client().presigned_get_object(
                bucket_name=bucket,
                object_name=object_name,
                expires=timedelta(seconds=expires_seconds),
            )
        except S3Error as e:
            logger.error(f"S3 error generating presigned URL for {object_name}: {e}")
            return PresignedUrlResult(success=False, error=f"S3 error: {e.code} - {e.message}")
        except ValueError as e:
            logger.error(f"Error generating presigned URL for {object_name}: {e}")
            return PresignedUrlResult(success=False, error=str(e))

        return PresignedUrlResult(success=True, url=url, expires_in_seconds=expires_seconds)

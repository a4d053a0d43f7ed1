"""S3-compatible storage client implementation.

This module provides an S3-compatible storage client that works with
AWS S3, MinIO, and other S3-compatible object storage services.

Dependencies:
    - boto3
    - botocore
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterator

from blobstore.infra.storage.client import (
    COPY_PART_SIZE,
    ObjectHead,
    ObjectListing,
    ObjectNotFoundError,
    ObjectSummary,
    StorageError,
    is_missing_key,
)

if TYPE_CHECKING:
    from blobstore.common.config import Settings

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 1024 * 1024
# Files above this size are uploaded as concurrent parts by s3transfer
MULTIPART_THRESHOLD = 64 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 16 * 1024 * 1024
MAX_TRANSFER_CONCURRENCY = 8


def _storage_error(message: str, exc: Exception) -> StorageError:
    if is_missing_key(exc):
        return ObjectNotFoundError(f"{message}: {exc}")
    return StorageError(f"{message}: {exc}")


def _head_from_response(response: dict[str, Any]) -> ObjectHead:
    size = response.get("ContentLength")
    return ObjectHead(
        size_bytes=int(size) if size is not None else 0,
        etag=response.get("ETag"),
        content_type=response.get("ContentType"),
    )


class S3StorageClient:
    """S3-compatible object storage client.

    Supports AWS S3, MinIO, and other S3-compatible services.
    Uses boto3 for all storage operations and s3transfer for uploads.
    """

    def __init__(self, *, settings: "Settings", accelerate: bool = False) -> None:
        """Initialize the S3 client with configuration from settings.

        Args:
            settings: Application settings containing S3 configuration.
            accelerate: Route requests through the S3 transfer acceleration
                endpoint.

        Raises:
            StorageError: If boto3 is not installed.
        """
        self._settings = settings
        self._client = self._build_client(settings, accelerate)
        self._transfer_config = self._build_transfer_config()
        self._sse_args = self._build_sse_args(settings)

    @staticmethod
    def _build_client(settings: "Settings", accelerate: bool = False) -> Any:
        """Create a boto3 S3 client from settings."""
        try:
            import boto3
            from botocore.config import Config
        except ImportError as exc:
            raise StorageError(
                "boto3 and botocore are required for S3 storage backend. "
                "Install with: pip install boto3"
            ) from exc

        addressing_style = (settings.S3_ADDRESSING_STYLE or "auto").strip().lower()
        options: dict[str, Any] = {
            "s3": {
                "addressing_style": addressing_style,
                "use_accelerate_endpoint": bool(accelerate),
            }
        }
        if settings.S3_MAX_CONNECTIONS and settings.S3_MAX_CONNECTIONS > 0:
            options["max_pool_connections"] = settings.S3_MAX_CONNECTIONS
        if settings.S3_MAX_RETRIES is not None and settings.S3_MAX_RETRIES >= 0:
            options["retries"] = {
                "max_attempts": settings.S3_MAX_RETRIES,
                "mode": "standard",
            }
        if settings.S3_CONNECT_TIMEOUT is not None and settings.S3_CONNECT_TIMEOUT >= 0:
            options["connect_timeout"] = settings.S3_CONNECT_TIMEOUT
        if settings.S3_READ_TIMEOUT is not None and settings.S3_READ_TIMEOUT >= 0:
            options["read_timeout"] = settings.S3_READ_TIMEOUT

        # Missing keys fall back to the boto3 credential chain (env, instance role)
        return boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL,
            region_name=settings.S3_REGION,
            aws_access_key_id=settings.S3_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.S3_SECRET_ACCESS_KEY or None,
            use_ssl=bool(settings.S3_USE_SSL),
            config=Config(**options),
        )

    @staticmethod
    def _build_transfer_config() -> Any:
        from boto3.s3.transfer import TransferConfig

        return TransferConfig(
            multipart_threshold=MULTIPART_THRESHOLD,
            multipart_chunksize=MULTIPART_CHUNK_SIZE,
            max_concurrency=MAX_TRANSFER_CONCURRENCY,
        )

    @staticmethod
    def _build_sse_args(settings: "Settings") -> dict[str, str]:
        args: dict[str, str] = {}
        if settings.S3_SSE_ALGORITHM:
            args["ServerSideEncryption"] = settings.S3_SSE_ALGORITHM
        if settings.S3_SSE_KMS_KEY_ID:
            args["SSEKMSKeyId"] = settings.S3_SSE_KMS_KEY_ID
        return args

    def head_object(self, *, bucket: str, object_key: str) -> ObjectHead:
        """Get object metadata without downloading the content."""
        try:
            response = self._client.head_object(Bucket=bucket, Key=object_key)
        except Exception as exc:
            raise _storage_error("Failed to get object metadata", exc) from exc
        return _head_from_response(response)

    def upload_file(
        self,
        *,
        bucket: str,
        object_key: str,
        path: Path,
        extra_args: dict[str, str] | None = None,
    ) -> ObjectHead:
        """Upload a local file and return the metadata of the stored object."""
        args = {**self._sse_args, **(extra_args or {})}
        try:
            self._client.upload_file(
                Filename=str(path),
                Bucket=bucket,
                Key=object_key,
                ExtraArgs=args or None,
                Config=self._transfer_config,
            )
        except Exception as exc:
            raise StorageError(f"Failed to upload object: {exc}") from exc
        return self.head_object(bucket=bucket, object_key=object_key)

    def download_file(
        self, *, bucket: str, object_key: str, path: Path
    ) -> ObjectHead:
        """Download an object into a local file."""
        try:
            response = self._client.get_object(Bucket=bucket, Key=object_key)
        except Exception as exc:
            raise _storage_error("Failed to get object", exc) from exc

        body = response["Body"]
        try:
            with open(path, "wb") as fp:
                for chunk in body.iter_chunks(DOWNLOAD_CHUNK_SIZE):
                    fp.write(chunk)
        except Exception as exc:
            raise StorageError(f"Failed to read object body: {exc}") from exc
        finally:
            body.close()
        return _head_from_response(response)

    def iter_object_chunks(
        self, *, bucket: str, object_key: str, chunk_size: int = DOWNLOAD_CHUNK_SIZE
    ) -> Iterator[bytes]:
        """Stream the object content."""
        try:
            response = self._client.get_object(Bucket=bucket, Key=object_key)
        except Exception as exc:
            raise _storage_error("Failed to get object", exc) from exc

        body = response["Body"]
        try:
            yield from body.iter_chunks(chunk_size)
        except Exception as exc:
            raise StorageError(f"Failed to read object body: {exc}") from exc
        finally:
            body.close()

    def list_objects(
        self,
        *,
        bucket: str,
        prefix: str,
        continuation_token: str | None = None,
    ) -> ObjectListing:
        """Return one page of the objects under ``prefix``."""
        params: dict[str, Any] = {"Bucket": bucket, "Prefix": prefix}
        if continuation_token:
            params["ContinuationToken"] = continuation_token
        try:
            response = self._client.list_objects_v2(**params)
        except Exception as exc:
            raise StorageError(f"Failed to list objects: {exc}") from exc

        entries = tuple(
            ObjectSummary(key=item["Key"], size_bytes=int(item.get("Size") or 0))
            for item in response.get("Contents") or []
        )
        next_token = None
        if response.get("IsTruncated"):
            next_token = response.get("NextContinuationToken")
            if not next_token:
                raise StorageError("S3 response truncated without continuation token")
        return ObjectListing(entries=entries, next_token=next_token)

    def delete_object(self, *, bucket: str, object_key: str) -> None:
        """Delete an object from storage."""
        try:
            self._client.delete_object(Bucket=bucket, Key=object_key)
        except Exception as exc:
            raise StorageError(f"Failed to delete object: {exc}") from exc

    def copy_object(
        self,
        *,
        source_bucket: str,
        source_key: str,
        bucket: str,
        object_key: str,
    ) -> ObjectHead:
        """Server-side copy in a single request."""
        try:
            self._client.copy_object(
                Bucket=bucket,
                Key=object_key,
                CopySource={"Bucket": source_bucket, "Key": source_key},
                **self._sse_args,
            )
        except Exception as exc:
            raise _storage_error("Failed to copy object", exc) from exc
        return self.head_object(bucket=bucket, object_key=object_key)

    def copy_object_multipart(
        self,
        *,
        source_bucket: str,
        source_key: str,
        bucket: str,
        object_key: str,
        size_bytes: int,
        part_size: int = COPY_PART_SIZE,
        content_type: str | None = None,
    ) -> ObjectHead:
        """Server-side copy through ranged part copies."""
        params: dict[str, Any] = {"Bucket": bucket, "Key": object_key, **self._sse_args}
        if content_type:
            params["ContentType"] = content_type
        try:
            response = self._client.create_multipart_upload(**params)
        except Exception as exc:
            raise StorageError(f"Failed to create multipart upload: {exc}") from exc

        upload_id = response.get("UploadId")
        if not upload_id:
            raise StorageError("S3 response missing UploadId")

        parts: list[dict[str, Any]] = []
        try:
            position = 0
            part_number = 1
            while position < size_bytes:
                last_byte = min(position + part_size, size_bytes) - 1
                result = self._client.upload_part_copy(
                    Bucket=bucket,
                    Key=object_key,
                    UploadId=upload_id,
                    PartNumber=part_number,
                    CopySource={"Bucket": source_bucket, "Key": source_key},
                    CopySourceRange=f"bytes={position}-{last_byte}",
                )
                parts.append(
                    {"ETag": result["CopyPartResult"]["ETag"], "PartNumber": part_number}
                )
                position = last_byte + 1
                part_number += 1
            self._client.complete_multipart_upload(
                Bucket=bucket,
                Key=object_key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except Exception as exc:
            try:
                self._client.abort_multipart_upload(
                    Bucket=bucket, Key=object_key, UploadId=upload_id
                )
            except Exception:
                logger.warning(
                    "abort_multipart_copy_failed key=%s upload_id=%s",
                    object_key,
                    upload_id,
                    exc_info=True,
                )
            raise _storage_error("Failed to copy object in parts", exc) from exc
        return self.head_object(bucket=bucket, object_key=object_key)

    def presign_download(
        self,
        *,
        bucket: str,
        object_key: str,
        expires_in: int,
        filename: str | None = None,
        content_type: str | None = None,
    ) -> str:
        """Generate a presigned URL for downloading an object."""
        params: dict[str, Any] = {"Bucket": bucket, "Key": object_key}
        if filename:
            # Escape quotes in filename for Content-Disposition header
            safe_filename = filename.replace('"', '\\"')
            params["ResponseContentDisposition"] = (
                f'attachment; filename="{safe_filename}"'
            )
        if content_type:
            params["ResponseContentType"] = content_type

        try:
            url = self._client.generate_presigned_url(
                "get_object",
                Params=params,
                ExpiresIn=int(expires_in),
            )
        except Exception as exc:
            raise StorageError(f"Failed to generate download URL: {exc}") from exc

        if not url:
            raise StorageError("Generated presigned URL is empty")

        return str(url)

    def abort_multipart_uploads(
        self, *, bucket: str, initiated_before: datetime
    ) -> int:
        """Abort multipart uploads started before ``initiated_before``."""
        aborted = 0
        try:
            paginator = self._client.get_paginator("list_multipart_uploads")
            for page in paginator.paginate(Bucket=bucket):
                for upload in page.get("Uploads") or []:
                    initiated = upload.get("Initiated")
                    if initiated is None or initiated >= initiated_before:
                        continue
                    self._client.abort_multipart_upload(
                        Bucket=bucket,
                        Key=upload["Key"],
                        UploadId=upload["UploadId"],
                    )
                    aborted += 1
        except Exception as exc:
            raise StorageError(f"Failed to abort old uploads: {exc}") from exc
        return aborted

    def ensure_bucket(self, *, bucket: str, region: str | None = None) -> bool:
        """Create the bucket when it doesn't exist."""
        try:
            self._client.head_bucket(Bucket=bucket)
            return False
        except Exception as exc:
            if not is_missing_key(exc):
                raise StorageError(f"Failed to check bucket: {exc}") from exc

        params: dict[str, Any] = {"Bucket": bucket}
        # us-east-1 rejects an explicit location constraint
        if region and region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": region}
        try:
            self._client.create_bucket(**params)
        except Exception as exc:
            raise StorageError(f"Failed to create bucket: {exc}") from exc
        logger.info("bucket_created bucket=%s region=%s", bucket, region or "-")
        return True

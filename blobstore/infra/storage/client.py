"""Storage client protocol and data types.

This module defines the interface for the object storage operations the blob
store relies on: metadata, transfer, listing, deletion, server-side copy,
presigned downloads and multipart upload maintenance.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Protocol

# S3 refuses a single CopyObject above 5 GiB
NON_MULTIPART_COPY_MAX_SIZE = 5 * 1024 * 1024 * 1024
COPY_PART_SIZE = 100 * 1024 * 1024


class StorageError(RuntimeError):
    """Raised when object storage operations fail."""


class ObjectNotFoundError(StorageError):
    """Raised when the requested object does not exist."""


@dataclass(frozen=True, slots=True)
class ObjectHead:
    """Metadata from a HEAD object request (or a transfer response)."""

    size_bytes: int
    etag: str | None
    content_type: str | None


@dataclass(frozen=True, slots=True)
class ObjectSummary:
    """One entry of a bucket listing."""

    key: str
    size_bytes: int


@dataclass(frozen=True, slots=True)
class ObjectListing:
    """A page of a bucket listing and the token for the next one."""

    entries: tuple[ObjectSummary, ...]
    next_token: str | None

    @property
    def is_truncated(self) -> bool:
        return self.next_token is not None


@dataclass(frozen=True, slots=True)
class TemporaryCredentials:
    """Short-lived credentials obtained by assuming a role."""

    access_key_id: str
    secret_access_key: str
    session_token: str
    expiration: datetime


def is_missing_key(exc: BaseException) -> bool:
    """Tell whether a botocore error means the key is absent.

    404 status, a ``NoSuchKey``/``NotFound`` error code or a literal
    ``Not Found`` message all count; anything else is a real failure.
    """
    response: Any = getattr(exc, "response", None)
    if not isinstance(response, dict):
        return False
    error = response.get("Error") or {}
    metadata = response.get("ResponseMetadata") or {}
    if metadata.get("HTTPStatusCode") == 404:
        return True
    if str(error.get("Code")) in {"NoSuchKey", "NotFound", "404"}:
        return True
    return error.get("Message") == "Not Found"


class StorageClient(Protocol):
    """Protocol defining the interface for object storage backends.

    Implementations must raise ObjectNotFoundError for absent keys and
    StorageError for every other failure.
    """

    def head_object(self, *, bucket: str, object_key: str) -> ObjectHead:
        """Get object metadata without downloading the content.

        Raises:
            ObjectNotFoundError: If the object doesn't exist.
            StorageError: If the operation fails.
        """
        ...

    def upload_file(
        self,
        *,
        bucket: str,
        object_key: str,
        path: Path,
        extra_args: dict[str, str] | None = None,
    ) -> ObjectHead:
        """Upload a local file, splitting it into parts when large.

        Blocks until every part is uploaded and returns the stored metadata.

        Raises:
            StorageError: If the upload fails.
        """
        ...

    def download_file(
        self, *, bucket: str, object_key: str, path: Path
    ) -> ObjectHead:
        """Download an object into a local file.

        Raises:
            ObjectNotFoundError: If the object doesn't exist.
            StorageError: If the download fails.
        """
        ...

    def iter_object_chunks(
        self, *, bucket: str, object_key: str, chunk_size: int
    ) -> Iterator[bytes]:
        """Stream the object content.

        Raises:
            ObjectNotFoundError: If the object doesn't exist.
            StorageError: If the read fails.
        """
        ...

    def list_objects(
        self,
        *,
        bucket: str,
        prefix: str,
        continuation_token: str | None = None,
    ) -> ObjectListing:
        """Return one page of the objects under ``prefix``.

        Raises:
            StorageError: If the listing fails.
        """
        ...

    def delete_object(self, *, bucket: str, object_key: str) -> None:
        """Delete an object from storage.

        Raises:
            StorageError: If the operation fails.
        """
        ...

    def copy_object(
        self,
        *,
        source_bucket: str,
        source_key: str,
        bucket: str,
        object_key: str,
    ) -> ObjectHead:
        """Server-side copy in a single request (source up to 5 GiB).

        Returns:
            ObjectHead of the new object, its ETag computed by the store.

        Raises:
            ObjectNotFoundError: If the source doesn't exist.
            StorageError: If the copy fails.
        """
        ...

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
        """Server-side copy through ranged part copies, for any size.

        Raises:
            StorageError: If the copy fails. The partial upload is aborted.
        """
        ...

    def presign_download(
        self,
        *,
        bucket: str,
        object_key: str,
        expires_in: int,
        filename: str | None = None,
        content_type: str | None = None,
    ) -> str:
        """Generate a presigned URL for downloading an object.

        Raises:
            StorageError: If URL generation fails.
        """
        ...

    def abort_multipart_uploads(
        self, *, bucket: str, initiated_before: datetime
    ) -> int:
        """Abort multipart uploads started before the given instant.

        Returns:
            The number of aborted uploads.

        Raises:
            StorageError: If listing or aborting fails.
        """
        ...

    def ensure_bucket(self, *, bucket: str, region: str | None = None) -> bool:
        """Create the bucket when it doesn't exist.

        Returns:
            True when the bucket was created.

        Raises:
            StorageError: If the check or the creation fails.
        """
        ...


def iter_listing(
    client: StorageClient, *, bucket: str, prefix: str
) -> Iterator[ObjectSummary]:
    """Walk every page of a bucket listing.

    The sequence is finite and can only be restarted from the beginning.
    """
    token: str | None = None
    while True:
        page = client.list_objects(
            bucket=bucket, prefix=prefix, continuation_token=token
        )
        yield from page.entries
        if not page.is_truncated:
            return
        token = page.next_token

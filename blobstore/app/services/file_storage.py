"""Digest-keyed blob storage on top of an object store.

Blobs live at ``<prefix><digest>``. Writes are idempotent: a blob already
present under its digest is never uploaded again. Every write and read is
checked against the ETag reported by the store, which for single-part,
non-KMS objects is the MD5 of the content.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Protocol

from blobstore.app.services.base import IntegrityMismatchError
from blobstore.common.digest import etag_matches_digest, normalize_etag
from blobstore.infra.observability.metrics import (
    BLOB_OPERATION_LATENCY,
    BLOB_OPERATIONS,
)
from blobstore.infra.storage.client import ObjectNotFoundError, StorageClient

logger = logging.getLogger(__name__)


class FileStorage(Protocol):
    """Capabilities a blob storage backend must offer."""

    def store_file(self, digest: str, path: Path) -> None:
        ...

    def fetch_file(self, digest: str, path: Path) -> bool:
        ...

    def fetch_length(self, digest: str) -> int | None:
        ...


class S3FileStorage:
    """Stores blobs in a single bucket, keyed by their MD5 digest."""

    def __init__(
        self,
        storage: StorageClient,
        *,
        bucket: str,
        prefix: str = "",
        encrypted: bool = False,
    ) -> None:
        self._storage = storage
        self._bucket = bucket
        self._prefix = prefix
        self._encrypted = encrypted

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def prefix(self) -> str:
        return self._prefix

    def key_for(self, digest: str) -> str:
        return f"{self._prefix}{digest}"

    @contextmanager
    def _timed(self, operation: str, digest: str) -> Iterator[None]:
        logger.debug("%s blob %s in S3", operation, digest)
        started = time.perf_counter()
        try:
            yield
        finally:
            elapsed = time.perf_counter() - started
            BLOB_OPERATION_LATENCY.labels(operation).observe(elapsed)
            logger.debug(
                "%s blob %s in S3 took %.1fms", operation, digest, elapsed * 1000
            )

    def store_file(self, digest: str, path: Path) -> None:
        """Store a local file under its digest.

        Args:
            digest: MD5 of the file content.
            path: Local file to upload.

        Raises:
            IntegrityMismatchError: If the stored ETag doesn't confirm the digest.
            StorageError: If the transfer fails.
        """
        key = self.key_for(digest)
        with self._timed("store", digest):
            try:
                head = self._storage.head_object(bucket=self._bucket, object_key=key)
                outcome = "exists"
                logger.debug("blob %s is already in S3", digest)
            except ObjectNotFoundError:
                head = self._storage.upload_file(
                    bucket=self._bucket, object_key=key, path=Path(path)
                )
                outcome = "uploaded"

        # Only the remote checksum confirms the bytes arrived intact; KMS
        # encrypted objects report a checksum of the ciphertext instead.
        if not etag_matches_digest(head.etag, digest, encrypted=self._encrypted):
            BLOB_OPERATIONS.labels("store", "integrity_mismatch").inc()
            raise IntegrityMismatchError(digest, normalize_etag(head.etag))
        BLOB_OPERATIONS.labels("store", outcome).inc()

    def fetch_file(self, digest: str, path: Path) -> bool:
        """Download a blob into ``path``.

        Returns:
            True on success, False when the blob is missing or its ETag
            doesn't match the digest.

        Raises:
            StorageError: If the transfer fails for another reason.
        """
        target = Path(path)
        with self._timed("fetch", digest):
            try:
                head = self._storage.download_file(
                    bucket=self._bucket, object_key=self.key_for(digest), path=target
                )
            except ObjectNotFoundError:
                target.unlink(missing_ok=True)
                BLOB_OPERATIONS.labels("fetch", "missing").inc()
                return False
            except Exception:
                target.unlink(missing_ok=True)
                BLOB_OPERATIONS.labels("fetch", "error").inc()
                raise

        if not etag_matches_digest(head.etag, digest, encrypted=self._encrypted):
            logger.error(
                "Invalid ETag in S3, ETag=%s digest=%s", normalize_etag(head.etag), digest
            )
            target.unlink(missing_ok=True)
            BLOB_OPERATIONS.labels("fetch", "integrity_mismatch").inc()
            return False
        BLOB_OPERATIONS.labels("fetch", "ok").inc()
        return True

    def fetch_length(self, digest: str) -> int | None:
        """Get the blob length without downloading it.

        Returns:
            The content length, or None when the blob is missing or its ETag
            doesn't match the digest.
        """
        with self._timed("length", digest):
            try:
                head = self._storage.head_object(
                    bucket=self._bucket, object_key=self.key_for(digest)
                )
            except ObjectNotFoundError:
                return None

        if not etag_matches_digest(head.etag, digest, encrypted=self._encrypted):
            logger.error(
                "Invalid ETag in S3, ETag=%s digest=%s", normalize_etag(head.etag), digest
            )
            return None
        return head.size_bytes

    def remove(self, digest: str) -> None:
        self._storage.delete_object(bucket=self._bucket, object_key=self.key_for(digest))
        BLOB_OPERATIONS.labels("remove", "ok").inc()

    def remove_binaries(self, digests: Iterable[str]) -> int:
        removed = 0
        for digest in digests:
            self.remove(digest)
            removed += 1
        return removed

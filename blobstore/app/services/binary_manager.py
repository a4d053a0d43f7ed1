"""Binary manager storing blobs as S3 objects.

Blobs are cached locally on first access. Writes spool the incoming stream to
the cache directory while computing the MD5, then hand the file to the S3
file storage under that digest.
"""

from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import BinaryIO, Iterable

from blobstore.app.services.file_storage import S3FileStorage
from blobstore.app.services.garbage_collector import S3BinaryGarbageCollector
from blobstore.common.config import Settings, get_settings
from blobstore.common.digest import CHUNK_SIZE, is_digest, new_hasher
from blobstore.infra.storage.client import StorageClient, StorageError
from blobstore.infra.storage.s3_client import S3StorageClient

logger = logging.getLogger(__name__)

# Multipart uploads left behind by crashed transfers
STALE_UPLOAD_AGE = timedelta(days=1)


def normalize_prefix(prefix: str | None) -> str:
    prefix = (prefix or "").lstrip("/")
    if prefix and not prefix.endswith("/"):
        logger.warning(
            "S3_PREFIX %s S3 bucket prefix should end by '/': added automatically.",
            prefix,
        )
        prefix += "/"
    return prefix


class S3BinaryManager:
    """Entry point for writing, reading and collecting S3 blobs."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        storage_client: StorageClient | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._bucket = self._settings.require_bucket()
        self._prefix = normalize_prefix(self._settings.S3_PREFIX)
        self._storage = storage_client or S3StorageClient(settings=self._settings)
        self._file_storage = S3FileStorage(
            self._storage,
            bucket=self._bucket,
            prefix=self._prefix,
            encrypted=self._settings.is_encrypted,
        )
        self._cache_dir = Path(self._settings.BLOB_CACHE_DIR)

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def prefix(self) -> str:
        return self._prefix

    @property
    def storage_client(self) -> StorageClient:
        return self._storage

    @property
    def file_storage(self) -> S3FileStorage:
        return self._file_storage

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def setup(self) -> None:
        """Prepare the bucket and clean up after crashed uploads.

        Bucket creation failures are fatal; the stale upload cleanup is
        advisory and only logged when it fails.
        """
        if self._settings.S3_CREATE_BUCKET:
            self._storage.ensure_bucket(
                bucket=self._bucket, region=self._settings.S3_REGION
            )
        try:
            self.abort_old_uploads()
        except StorageError:
            logger.exception("abort_old_uploads_failed bucket=%s", self._bucket)

    def abort_old_uploads(self) -> int:
        """Abort multipart uploads older than one day."""
        threshold = datetime.now(timezone.utc) - STALE_UPLOAD_AGE
        aborted = self._storage.abort_multipart_uploads(
            bucket=self._bucket, initiated_before=threshold
        )
        if aborted:
            logger.info(
                "aborted_old_uploads bucket=%s count=%s", self._bucket, aborted
            )
        return aborted

    def _tmp_dir(self) -> Path:
        tmp = self._cache_dir / "tmp"
        tmp.mkdir(parents=True, exist_ok=True)
        return tmp

    def cached_path(self, digest: str) -> Path:
        return self._cache_dir / digest

    def write_binary(self, stream: BinaryIO) -> str:
        """Store the stream content and return its digest."""
        hasher = new_hasher()
        fd, tmp_name = tempfile.mkstemp(prefix="bin_", suffix=".tmp", dir=self._tmp_dir())
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as out:
                while True:
                    chunk = stream.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    hasher.update(chunk)
                    out.write(chunk)
            digest = hasher.hexdigest()
            self._file_storage.store_file(digest, tmp_path)
            os.replace(tmp_path, self.cached_path(digest))
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        return digest

    def read_binary(self, digest: str) -> Path | None:
        """Return a local file with the blob content, or None if unavailable."""
        if not is_digest(digest):
            return None
        cached = self.cached_path(digest)
        if cached.exists():
            return cached
        fd, tmp_name = tempfile.mkstemp(prefix="bin_", suffix=".tmp", dir=self._tmp_dir())
        os.close(fd)
        tmp_path = Path(tmp_name)
        try:
            if not self._file_storage.fetch_file(digest, tmp_path):
                return None
            os.replace(tmp_path, cached)
        finally:
            tmp_path.unlink(missing_ok=True)
        return cached

    def get_length(self, digest: str) -> int | None:
        if not is_digest(digest):
            return None
        cached = self.cached_path(digest)
        if cached.exists():
            return cached.stat().st_size
        return self._file_storage.fetch_length(digest)

    def get_remote_uri(
        self,
        digest: str,
        *,
        filename: str | None = None,
        content_type: str | None = None,
    ) -> str | None:
        """Presigned download URL, or None when direct download is disabled."""
        if not self._settings.S3_DIRECT_DOWNLOAD:
            return None
        return self._storage.presign_download(
            bucket=self._bucket,
            object_key=self._file_storage.key_for(digest),
            expires_in=self._settings.S3_DIRECT_DOWNLOAD_EXPIRE,
            filename=filename,
            content_type=content_type,
        )

    def remove_binaries(self, digests: Iterable[str]) -> int:
        digests = list(digests)
        for digest in digests:
            self.cached_path(digest).unlink(missing_ok=True)
        return self._file_storage.remove_binaries(digests)

    def garbage_collector(self) -> S3BinaryGarbageCollector:
        return S3BinaryGarbageCollector(self)

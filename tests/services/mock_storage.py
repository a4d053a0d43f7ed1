"""Mock storage client for testing blob and batch operations."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from blobstore.infra.storage.client import (
    COPY_PART_SIZE,
    ObjectHead,
    ObjectListing,
    ObjectNotFoundError,
    ObjectSummary,
    StorageError,
)


def md5_of(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


@dataclass
class MockStorageClient:
    """In-memory mock of StorageClient for testing.

    ETags are computed like S3 does for single-part objects. Objects put with
    an explicit ``etag`` keep it until they are copied, and ``size`` lets a
    test pretend an object is larger than its bytes.
    """

    objects: dict[tuple[str, str], dict[str, Any]] = field(default_factory=dict)
    calls: list[tuple[str, str]] = field(default_factory=list)
    stale_uploads: list[datetime] = field(default_factory=list)
    buckets: set[str] = field(default_factory=set)
    page_size: int = 1000
    fail_listing: bool = False
    upload_etag: str | None = None

    def put(
        self,
        bucket: str,
        key: str,
        data: bytes,
        *,
        etag: str | None = None,
        size: int | None = None,
        content_type: str | None = None,
    ) -> None:
        self.objects[(bucket, key)] = {
            "data": data,
            "etag": f'"{md5_of(data) if etag is None else etag}"',
            "size": len(data) if size is None else size,
            "content_type": content_type,
        }

    def keys(self, bucket: str) -> list[str]:
        return sorted(key for b, key in self.objects if b == bucket)

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)

    def _get(self, bucket: str, key: str) -> dict[str, Any]:
        try:
            return self.objects[(bucket, key)]
        except KeyError:
            raise ObjectNotFoundError(f"Not Found: {bucket}/{key}") from None

    @staticmethod
    def _head(obj: dict[str, Any]) -> ObjectHead:
        return ObjectHead(
            size_bytes=obj["size"], etag=obj["etag"], content_type=obj["content_type"]
        )

    def head_object(self, *, bucket: str, object_key: str) -> ObjectHead:
        self.calls.append(("head_object", object_key))
        return self._head(self._get(bucket, object_key))

    def upload_file(
        self,
        *,
        bucket: str,
        object_key: str,
        path: Path,
        extra_args: dict[str, str] | None = None,
    ) -> ObjectHead:
        self.calls.append(("upload_file", object_key))
        data = Path(path).read_bytes()
        self.put(bucket, object_key, data, etag=self.upload_etag)
        return self._head(self.objects[(bucket, object_key)])

    def download_file(self, *, bucket: str, object_key: str, path: Path) -> ObjectHead:
        self.calls.append(("download_file", object_key))
        obj = self._get(bucket, object_key)
        Path(path).write_bytes(obj["data"])
        return self._head(obj)

    def iter_object_chunks(
        self, *, bucket: str, object_key: str, chunk_size: int
    ) -> Iterator[bytes]:
        self.calls.append(("iter_object_chunks", object_key))
        data = self._get(bucket, object_key)["data"]
        for start in range(0, len(data), chunk_size):
            yield data[start : start + chunk_size]

    def list_objects(
        self,
        *,
        bucket: str,
        prefix: str,
        continuation_token: str | None = None,
    ) -> ObjectListing:
        self.calls.append(("list_objects", continuation_token or ""))
        if self.fail_listing:
            raise StorageError("Failed to list objects: boom")
        keys = [key for key in self.keys(bucket) if key.startswith(prefix)]
        start = int(continuation_token or 0)
        page = keys[start : start + self.page_size]
        end = start + len(page)
        return ObjectListing(
            entries=tuple(
                ObjectSummary(key=key, size_bytes=self.objects[(bucket, key)]["size"])
                for key in page
            ),
            next_token=str(end) if end < len(keys) else None,
        )

    def delete_object(self, *, bucket: str, object_key: str) -> None:
        self.calls.append(("delete_object", object_key))
        self.objects.pop((bucket, object_key), None)

    def copy_object(
        self,
        *,
        source_bucket: str,
        source_key: str,
        bucket: str,
        object_key: str,
    ) -> ObjectHead:
        self.calls.append(("copy_object", object_key))
        source = self._get(source_bucket, source_key)
        # a single-request copy always reports the plain MD5
        self.put(
            bucket,
            object_key,
            source["data"],
            size=source["size"],
            content_type=source["content_type"],
        )
        return self._head(self.objects[(bucket, object_key)])

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
        self.calls.append(("copy_object_multipart", object_key))
        source = self._get(source_bucket, source_key)
        parts = max(1, -(-size_bytes // part_size))
        self.put(
            bucket,
            object_key,
            source["data"],
            etag=f"{md5_of(source['data'])[:16]}{'0' * 16}-{parts}",
            size=size_bytes,
            content_type=content_type,
        )
        return self._head(self.objects[(bucket, object_key)])

    def presign_download(
        self,
        *,
        bucket: str,
        object_key: str,
        expires_in: int,
        filename: str | None = None,
        content_type: str | None = None,
    ) -> str:
        url = f"https://mock-s3/{bucket}/{object_key}?expires={expires_in}"
        if filename:
            url += f"&filename={filename}"
        return url

    def abort_multipart_uploads(
        self, *, bucket: str, initiated_before: datetime
    ) -> int:
        stale = [ts for ts in self.stale_uploads if ts < initiated_before]
        self.stale_uploads = [ts for ts in self.stale_uploads if ts >= initiated_before]
        return len(stale)

    def ensure_bucket(self, *, bucket: str, region: str | None = None) -> bool:
        if bucket in self.buckets:
            return False
        self.buckets.add(bucket)
        return True

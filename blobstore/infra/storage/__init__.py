"""Object storage abstraction layer.

This module provides a protocol-based abstraction for object storage backends,
enabling support for S3, MinIO, and other S3-compatible services.
"""

from .client import (
    COPY_PART_SIZE,
    NON_MULTIPART_COPY_MAX_SIZE,
    ObjectHead,
    ObjectListing,
    ObjectNotFoundError,
    ObjectSummary,
    StorageClient,
    StorageError,
    TemporaryCredentials,
    is_missing_key,
    iter_listing,
)

__all__ = [
    "COPY_PART_SIZE",
    "NON_MULTIPART_COPY_MAX_SIZE",
    "ObjectHead",
    "ObjectListing",
    "ObjectNotFoundError",
    "ObjectSummary",
    "StorageClient",
    "StorageError",
    "TemporaryCredentials",
    "is_missing_key",
    "iter_listing",
]

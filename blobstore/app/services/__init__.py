from .base import BaseService, IntegrityMismatchError, ServiceError
from .batch_handler import (
    Batch,
    BatchNotFoundError,
    BlobDescriptor,
    InvalidUploadKeyError,
    DirectUploadContext,
    S3DirectBatchHandler,
    UploadInfo,
)
from .binary_manager import S3BinaryManager
from .bundle import ServiceBundle, get_service_bundle
from .file_storage import FileStorage, S3FileStorage
from .garbage_collector import (
    GarbageCollectorStateError,
    GCState,
    GCStatus,
    S3BinaryGarbageCollector,
    sweep_listing,
)

__all__ = [
    "BaseService",
    "ServiceError",
    "IntegrityMismatchError",
    "Batch",
    "BatchNotFoundError",
    "BlobDescriptor",
    "InvalidUploadKeyError",
    "DirectUploadContext",
    "S3DirectBatchHandler",
    "UploadInfo",
    "S3BinaryManager",
    "ServiceBundle",
    "get_service_bundle",
    "FileStorage",
    "S3FileStorage",
    "GarbageCollectorStateError",
    "GCState",
    "GCStatus",
    "S3BinaryGarbageCollector",
    "sweep_listing",
]

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache

from sqlalchemy.orm import Session

from blobstore.common.config import Settings, get_settings
from blobstore.domain.repositories import BatchRepository

from .batch_handler import (
    DirectUploadContext,
    S3DirectBatchHandler,
    initialize,
    properties_from_settings,
)
from .binary_manager import S3BinaryManager


@lru_cache(maxsize=1)
def get_binary_manager() -> S3BinaryManager:
    return S3BinaryManager(get_settings())


@lru_cache(maxsize=1)
def get_direct_upload_context() -> DirectUploadContext:
    return initialize(properties_from_settings(get_settings()))


@dataclass
class ServiceBundle:
    """Lazily constructs application services sharing the same session."""

    session: Session
    settings: Settings = field(default_factory=get_settings)
    context: DirectUploadContext | None = None
    _batch_handler: S3DirectBatchHandler | None = field(
        default=None, init=False, repr=False
    )

    def batch_handler(self) -> S3DirectBatchHandler:
        if self._batch_handler is None:
            repo = BatchRepository(self.session)
            self._batch_handler = S3DirectBatchHandler(
                self.session,
                self.context or get_direct_upload_context(),
                name="s3",
                provider_id=self.settings.BATCH_PROVIDER_ID,
                ttl=timedelta(seconds=self.settings.BATCH_TTL_SECONDS),
                repository=repo,
            )
        return self._batch_handler


def get_service_bundle(
    session: Session, context: DirectUploadContext | None = None
) -> ServiceBundle:
    return ServiceBundle(session=session, context=context)

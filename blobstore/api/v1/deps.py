from __future__ import annotations

import logging
from typing import Generator

from fastapi import Header, HTTPException

from blobstore.app.services.batch_handler import DirectUploadContext
from blobstore.app.services.binary_manager import S3BinaryManager
from blobstore.app.services.bundle import (
    get_binary_manager as _get_binary_manager,
    get_direct_upload_context,
)
from blobstore.common.config import get_settings
from blobstore.infra.db.session import get_session_factory

logger = logging.getLogger("http")


def get_db() -> Generator:
    session_factory = get_session_factory()
    db = session_factory()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_binary_manager() -> S3BinaryManager:
    return _get_binary_manager()


def get_upload_context() -> DirectUploadContext:
    return get_direct_upload_context()


def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
    settings = get_settings()
    if settings.API_KEY_ENABLED:
        api_key_expected = getattr(settings, "API_KEY", None)
        if not x_api_key or (api_key_expected and x_api_key != api_key_expected):
            raise HTTPException(status_code=401, detail="Invalid API key")


def require_admin_key(x_admin_key: str | None = Header(default=None)) -> None:
    settings = get_settings()
    admin_key = getattr(settings, "ADMIN_API_KEY", None)
    if not admin_key:
        raise HTTPException(status_code=503, detail="Admin operations are disabled")
    if x_admin_key != admin_key:
        preview = "<missing>"
        if x_admin_key:
            preview = f"{x_admin_key[:4]}***"
        logger.warning(
            "admin_key_mismatch admin_key_preview=%s",
            preview,
        )
        raise HTTPException(status_code=403, detail="Forbidden")

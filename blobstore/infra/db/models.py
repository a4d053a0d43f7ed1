from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from blobstore.infra.db.base import Base

JSON_TYPE = JSON().with_variant(JSONB(), "postgresql")


class UploadBatch(Base):
    """Transient direct-upload session.

    Fields
    -------
    batch_id : opaque identifier handed to the client.
    handler : name of the batch handler that owns the session.
    parameters : session parameters recorded when the batch was created.
    files : finalized blob descriptors keyed by file index.
    created_at : creation time.
    expires_at : after this instant the batch no longer exists.
    """

    __tablename__ = "upload_batches"

    batch_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    handler: Mapped[str] = mapped_column(String(64), nullable=False)
    parameters: Mapped[dict[str, Any]] = mapped_column(
        JSON_TYPE, nullable=False, default=dict
    )
    files: Mapped[dict[str, Any]] = mapped_column(
        JSON_TYPE, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (Index("ix_upload_batches_expires_at", "expires_at"),)

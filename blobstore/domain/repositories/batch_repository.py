"""Batch repository for the transient upload session store.

Batches are short-lived: every read ignores rows past their expiry, and
expired rows are removed by the cleanup script or the admin endpoint.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from blobstore.infra.db.models import UploadBatch


class BatchRepository:
    """Repository for UploadBatch database operations."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, batch_id: str, *, now: datetime | None = None) -> UploadBatch | None:
        """Get a live batch by ID.

        Args:
            batch_id: The batch identifier.
            now: Reference instant for expiry, defaults to the current time.

        Returns:
            The UploadBatch if found and not expired, None otherwise.
        """
        now = now or datetime.now(timezone.utc)
        stmt = select(UploadBatch).where(
            UploadBatch.batch_id == batch_id,
            UploadBatch.expires_at > now,
        )
        return self._session.execute(stmt).scalar_one_or_none()

    def create(
        self,
        batch_id: str,
        *,
        handler: str,
        ttl: timedelta,
        parameters: dict[str, Any] | None = None,
    ) -> UploadBatch:
        batch = UploadBatch(
            batch_id=batch_id,
            handler=handler,
            parameters=dict(parameters or {}),
            files={},
            expires_at=datetime.now(timezone.utc) + ttl,
        )
        self._session.add(batch)
        self._session.flush()
        return batch

    def add_file(
        self, batch: UploadBatch, file_index: str, descriptor: dict[str, Any]
    ) -> UploadBatch:
        # reassign so the JSON column is flagged as modified
        batch.files = {**dict(batch.files or {}), str(file_index): descriptor}
        self._session.flush()
        return batch

    def delete(self, batch_id: str) -> bool:
        result = self._session.execute(
            delete(UploadBatch).where(UploadBatch.batch_id == batch_id)
        )
        return bool(result.rowcount)

    def count_expired(self, threshold: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(UploadBatch)
            .where(UploadBatch.expires_at <= threshold)
        )
        return int(self._session.execute(stmt).scalar_one())

    def delete_expired(self, threshold: datetime) -> int:
        """Delete batches that expired at or before ``threshold``."""
        total = self.count_expired(threshold)
        if total:
            self._session.execute(
                delete(UploadBatch).where(UploadBatch.expires_at <= threshold)
            )
        return total

from __future__ import annotations

from sqlalchemy.orm import Session


class ServiceError(Exception):
    """Base class for application service level exceptions."""


class IntegrityMismatchError(ServiceError):
    """Raised when the store's ETag disagrees with the expected digest."""

    def __init__(self, digest: str, etag: str | None) -> None:
        super().__init__(f"Invalid ETag in S3, ETag={etag} digest={digest}")
        self.digest = digest
        self.etag = etag


class BaseService:
    """Provides guard rails and helpers shared by session-bound services."""

    def __init__(self, session: Session):
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    def _commit(self) -> None:
        try:
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise

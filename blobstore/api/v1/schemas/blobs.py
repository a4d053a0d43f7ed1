"""Pydantic schemas for blob and garbage collection endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class BlobOut(BaseModel):
    digest: str
    length: int


class BlobDownloadUrlOut(BaseModel):
    url: str
    expires_in: int


class GarbageCollectionRequest(BaseModel):
    """Digests currently referenced by the repository."""

    digests: list[str] = Field(default_factory=list)
    delete: bool = True


class GarbageCollectionStatusOut(BaseModel):
    num_binaries: int
    size_binaries: int
    num_binaries_gc: int
    size_binaries_gc: int
    started_at: datetime | None = None
    finished_at: datetime | None = None


class GarbageCollectionOut(BaseModel):
    collector: str
    delete: bool
    status: GarbageCollectionStatusOut

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from blobstore.api.v1.deps import get_binary_manager, get_db, require_admin_key
from blobstore.api.v1.schemas.blobs import (
    GarbageCollectionOut,
    GarbageCollectionRequest,
    GarbageCollectionStatusOut,
)
from blobstore.app.services.binary_manager import S3BinaryManager
from blobstore.domain.repositories import BatchRepository

router = APIRouter(dependencies=[Depends(require_admin_key)])


@router.post("/admin/gc", response_model=GarbageCollectionOut)
def run_garbage_collection(
    payload: GarbageCollectionRequest,
    manager: S3BinaryManager = Depends(get_binary_manager),
) -> GarbageCollectionOut:
    """Reclaim every blob in the bucket that is not in ``digests``."""
    collector = manager.garbage_collector()
    collector.start()
    for digest in payload.digests:
        collector.mark(digest)
    gc_status = collector.stop(delete=payload.delete)
    return GarbageCollectionOut(
        collector=collector.id,
        delete=payload.delete,
        status=GarbageCollectionStatusOut.model_validate(
            gc_status, from_attributes=True
        ),
    )


@router.post("/admin/batches/cleanup")
def cleanup_batches(
    db: Session = Depends(get_db), hours: int | None = Query(default=None, ge=0)
):
    now = datetime.now(timezone.utc)
    threshold = now if hours is None else now - timedelta(hours=hours)
    deleted = BatchRepository(db).delete_expired(threshold)
    db.commit()
    return {"deleted": int(deleted), "threshold": threshold.isoformat()}


@router.post("/admin/uploads/abort-stale")
def abort_stale_uploads(manager: S3BinaryManager = Depends(get_binary_manager)):
    return {"aborted": manager.abort_old_uploads(), "bucket": manager.bucket}

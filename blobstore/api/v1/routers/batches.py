"""Direct-upload batch API router.

Clients create a batch, upload files straight to the bucket with the
temporary credentials it carries, then report each file for finalization.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from blobstore.api.v1.deps import get_db, get_upload_context
from blobstore.api.v1.schemas.batches import (
    BatchOut,
    BatchPropertiesOut,
    BlobDescriptorOut,
    UploadComplete,
)
from blobstore.app.services.batch_handler import (
    Batch,
    BatchNotFoundError,
    DirectUploadContext,
    InvalidUploadKeyError,
    S3DirectBatchHandler,
    UploadInfo,
)
from blobstore.app.services.bundle import get_service_bundle

router = APIRouter()


def _handler(db: Session, context: DirectUploadContext) -> S3DirectBatchHandler:
    return get_service_bundle(db, context).batch_handler()


def _batch_out(batch: Batch) -> BatchOut:
    return BatchOut(
        batch_id=batch.batch_id,
        properties=BatchPropertiesOut.model_validate(batch.properties),
        files={
            index: BlobDescriptorOut.model_validate(descriptor)
            for index, descriptor in batch.files.items()
        },
    )


def _batch_not_found(batch_id: str) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"message": f"Batch {batch_id} not found", "error_code": "batch_not_found"},
    )


@router.post(
    "/batches",
    response_model=BatchOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create upload batch",
    description="Create a batch and issue temporary credentials scoped to it.",
)
def create_batch(
    db: Session = Depends(get_db),
    context: DirectUploadContext = Depends(get_upload_context),
) -> BatchOut:
    handler = _handler(db, context)
    batch_id = handler.new_batch()
    batch = handler.get_batch(batch_id)
    if batch is None:
        raise _batch_not_found(batch_id)
    return _batch_out(batch)


@router.get(
    "/batches/{batch_id}",
    response_model=BatchOut,
    summary="Get upload batch",
    description="Return the batch with freshly issued temporary credentials.",
)
def get_batch(
    batch_id: str,
    db: Session = Depends(get_db),
    context: DirectUploadContext = Depends(get_upload_context),
) -> BatchOut:
    batch = _handler(db, context).get_batch(batch_id)
    if batch is None:
        raise _batch_not_found(batch_id)
    return _batch_out(batch)


@router.delete(
    "/batches/{batch_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Drop upload batch",
)
def delete_batch(
    batch_id: str,
    db: Session = Depends(get_db),
    context: DirectUploadContext = Depends(get_upload_context),
) -> Response:
    if not _handler(db, context).remove_batch(batch_id):
        raise _batch_not_found(batch_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/batches/{batch_id}/files",
    response_model=dict[str, BlobDescriptorOut],
    summary="List finalized files",
)
def list_batch_files(
    batch_id: str,
    db: Session = Depends(get_db),
    context: DirectUploadContext = Depends(get_upload_context),
) -> dict[str, BlobDescriptorOut]:
    try:
        files = _handler(db, context).get_files(batch_id)
    except BatchNotFoundError as exc:
        raise _batch_not_found(batch_id) from exc
    return {
        index: BlobDescriptorOut.model_validate(descriptor)
        for index, descriptor in files.items()
    }


@router.post(
    "/batches/{batch_id}/files/{file_index}/complete",
    response_model=BlobDescriptorOut,
    summary="Complete direct upload",
    description=(
        "Validate the object uploaded under the given key and adopt it as a "
        "digest-identified blob. Returns 409 while the upload is not visible yet."
    ),
)
def complete_upload(
    batch_id: str,
    file_index: str,
    payload: UploadComplete,
    db: Session = Depends(get_db),
    context: DirectUploadContext = Depends(get_upload_context),
) -> BlobDescriptorOut:
    handler = _handler(db, context)
    info = UploadInfo(
        key=payload.key, filename=payload.filename, mime_type=payload.mime_type
    )
    try:
        completed = handler.complete_upload(batch_id, file_index, info)
    except BatchNotFoundError as exc:
        raise _batch_not_found(batch_id) from exc
    except InvalidUploadKeyError as exc:
        raise HTTPException(
            status_code=400,
            detail={"message": str(exc), "error_code": "invalid_upload_key"},
        ) from exc
    if not completed:
        raise HTTPException(
            status_code=409,
            detail={
                "message": f"No uploaded object at key {payload.key}",
                "error_code": "upload_incomplete",
            },
        )
    descriptor = handler.get_files(batch_id)[file_index]
    return BlobDescriptorOut.model_validate(descriptor)

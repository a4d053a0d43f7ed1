"""Blob API router: content-addressed write, read, length and direct download."""

from __future__ import annotations

import io
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, status
from fastapi.responses import FileResponse
from starlette.concurrency import run_in_threadpool

from blobstore.api.v1.deps import get_binary_manager
from blobstore.api.v1.schemas.blobs import BlobDownloadUrlOut, BlobOut
from blobstore.app.services.binary_manager import S3BinaryManager

router = APIRouter()

Digest = Annotated[
    str, Path(pattern=r"^[0-9a-f]{32}$", description="MD5 of the blob content")
]


def _blob_not_found(digest: str) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"message": f"Blob {digest} not found", "error_code": "blob_not_found"},
    )


@router.post(
    "/blobs",
    response_model=BlobOut,
    status_code=status.HTTP_201_CREATED,
    summary="Store blob",
    description="Store the raw request body and return its digest.",
)
async def store_blob(
    request: Request,
    manager: S3BinaryManager = Depends(get_binary_manager),
) -> BlobOut:
    body = await request.body()
    digest = await run_in_threadpool(manager.write_binary, io.BytesIO(body))
    return BlobOut(digest=digest, length=len(body))


@router.get(
    "/blobs/{digest}",
    summary="Fetch blob",
    response_class=FileResponse,
)
def fetch_blob(
    digest: Digest,
    manager: S3BinaryManager = Depends(get_binary_manager),
) -> FileResponse:
    path = manager.read_binary(digest)
    if path is None:
        raise _blob_not_found(digest)
    return FileResponse(path, media_type="application/octet-stream")


@router.get(
    "/blobs/{digest}/length",
    response_model=BlobOut,
    summary="Get blob length",
)
def get_blob_length(
    digest: Digest,
    manager: S3BinaryManager = Depends(get_binary_manager),
) -> BlobOut:
    length = manager.get_length(digest)
    if length is None:
        raise _blob_not_found(digest)
    return BlobOut(digest=digest, length=length)


@router.get(
    "/blobs/{digest}/download-url",
    response_model=BlobDownloadUrlOut,
    summary="Get direct download URL",
)
def get_blob_download_url(
    digest: Digest,
    filename: str | None = Query(default=None, max_length=255),
    content_type: str | None = Query(default=None, max_length=255),
    manager: S3BinaryManager = Depends(get_binary_manager),
) -> BlobDownloadUrlOut:
    url = manager.get_remote_uri(digest, filename=filename, content_type=content_type)
    if url is None:
        raise HTTPException(
            status_code=404,
            detail={
                "message": "Direct download is disabled",
                "error_code": "direct_download_disabled",
            },
        )
    return BlobDownloadUrlOut(
        url=url, expires_in=manager.settings.S3_DIRECT_DOWNLOAD_EXPIRE
    )

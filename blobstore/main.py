import logging

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from blobstore.api.v1.deps import require_api_key
from blobstore.api.v1.routers.admin import router as admin_router
from blobstore.api.v1.routers.batches import router as batches_router
from blobstore.api.v1.routers.blobs import router as blobs_router
from blobstore.app.services.base import IntegrityMismatchError
from blobstore.app.services.bundle import get_binary_manager, get_direct_upload_context
from blobstore.common.config import ConfigurationError, get_settings
from blobstore.common.logging import setup_logging
from blobstore.infra.db.session import create_schema
from blobstore.infra.observability.metrics import metrics_app
from blobstore.infra.observability.middleware import MetricsMiddleware
from blobstore.infra.storage.client import StorageError

ERROR_CODE_BY_STATUS = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    413: "payload_too_large",
    500: "internal_error",
    502: "bad_gateway",
    503: "service_unavailable",
}


def _normalize_detail(detail):
    if isinstance(detail, dict):
        maybe_code = detail.get("error_code")
        cleaned = {k: v for k, v in detail.items() if k != "error_code"}
        if len(cleaned) == 1 and "message" in cleaned:
            cleaned = cleaned["message"]
        if not cleaned:
            cleaned = None
        return cleaned, maybe_code if isinstance(maybe_code, str) else None
    return detail, None


def _resolve_error_code(status_code: int, override: str | None = None) -> str:
    if override:
        return override
    if status_code == 422:
        return "validation_error"
    return ERROR_CODE_BY_STATUS.get(status_code, "unknown_error")


def _problem(
    request: Request,
    status_code: int,
    title: str,
    detail,
    error_code: str | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        media_type="application/problem+json",
        content={
            "type": "about:blank",
            "title": title,
            "status": status_code,
            "detail": detail,
            "error_code": _resolve_error_code(status_code, error_code),
            "instance": str(request.url),
            "request_id": request.headers.get("X-Request-Id"),
        },
    )


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging()
    app = FastAPI(
        title="S3 Blob Store",
        version="v1.0",
        description="Content-addressed blob storage on S3 with direct uploads",
    )

    app.include_router(
        blobs_router,
        prefix="/api/v1",
        tags=["blobs"],
        dependencies=[Depends(require_api_key)],
    )
    app.include_router(
        batches_router,
        prefix="/api/v1",
        tags=["batches"],
        dependencies=[Depends(require_api_key)],
    )
    app.include_router(
        admin_router,
        prefix="/api/v1",
        tags=["admin"],
    )

    if settings.ENABLE_METRICS:
        app.add_middleware(MetricsMiddleware)
        app.mount("/metrics", metrics_app)

    @app.on_event("startup")
    def on_startup() -> None:
        startup_logger = logging.getLogger("blobstore.startup")
        create_schema()
        try:
            manager = get_binary_manager()
            if settings.BATCH_ROLE_ARN:
                get_direct_upload_context()
        except ConfigurationError as exc:
            startup_logger.error(
                "Storage configuration is invalid, aborting startup. "
                "[event=configuration_failed] (error=%s)",
                exc,
            )
            raise
        manager.setup()
        startup_logger.info(
            "Blob store ready. [event=startup_complete] (bucket=%s, prefix=%s)",
            manager.bucket,
            manager.prefix or "-",
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        logger = logging.getLogger("http")
        normalized_detail, code_override = _normalize_detail(exc.detail)
        logger.log(
            logging.WARNING if exc.status_code < 500 else logging.ERROR,
            "http_exception status=%s detail=%s method=%s path=%s request_id=%s",
            exc.status_code,
            normalized_detail,
            request.method,
            request.url.path,
            request.headers.get("X-Request-Id"),
            extra={
                "extra": {
                    "status": exc.status_code,
                    "detail": normalized_detail,
                    "method": request.method,
                    "route": request.url.path,
                    "request_id": request.headers.get("X-Request-Id"),
                }
            },
        )
        return _problem(
            request, exc.status_code, "HTTP Error", normalized_detail, code_override
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        return _problem(
            request, 422, "Validation Error", jsonable_encoder(exc.errors())
        )

    @app.exception_handler(StorageError)
    async def storage_exception_handler(request: Request, exc: StorageError):
        logging.getLogger("http").error(
            "storage_error method=%s path=%s error=%s",
            request.method,
            request.url.path,
            exc,
        )
        return _problem(request, 502, "Storage Error", str(exc), "storage_error")

    @app.exception_handler(IntegrityMismatchError)
    async def integrity_exception_handler(
        request: Request, exc: IntegrityMismatchError
    ):
        logging.getLogger("http").error(
            "integrity_mismatch digest=%s etag=%s", exc.digest, exc.etag
        )
        return _problem(request, 502, "Integrity Error", str(exc), "integrity_mismatch")

    @app.exception_handler(ConfigurationError)
    async def configuration_exception_handler(
        request: Request, exc: ConfigurationError
    ):
        return _problem(
            request, 503, "Configuration Error", str(exc), "storage_not_configured"
        )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("blobstore.main:app", host="0.0.0.0", port=8000, reload=True)

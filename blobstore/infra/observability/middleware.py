import json
import logging
import re
import time
import uuid
from typing import Any

from fastapi import Request
from starlette.concurrency import iterate_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from blobstore.common.config import get_settings
from blobstore.infra.observability.metrics import LATENCY, REQUESTS

MAX_TRACED_BODY = 2048

# Batch responses carry temporary AWS credentials
SENSITIVE_KEYS = {
    "password",
    "secret",
    "token",
    "api_key",
    "x-api-key",
    "x-admin-key",
    "authorization",
    "awssecretkeyid",
    "awssecretaccesskey",
    "awssessiontoken",
}

SENSITIVE_TEXT_PATTERNS = [
    re.compile(
        r"(?i)(token|secret|api_key|x-api-key|password|authorization|awssecretaccesskey|awssessiontoken)\s*[:=]\s*[^\s,&]+"
    ),
]


def mask_mapping(obj: Any) -> Any:
    if isinstance(obj, dict):
        masked: dict[str, Any] = {}
        for k, v in obj.items():
            if isinstance(k, str) and k.lower() in SENSITIVE_KEYS:
                masked[k] = "***"
            else:
                masked[k] = mask_mapping(v)
        return masked
    if isinstance(obj, list):
        return [mask_mapping(x) for x in obj]
    return obj


def mask_text(text: str) -> str:
    masked = text
    for pattern in SENSITIVE_TEXT_PATTERNS:
        masked = pattern.sub(
            lambda m: m.group(0).split(":")[0].split("=")[0] + ": ***", masked
        )
    return masked


def render_body(raw_body: bytes) -> str | None:
    if not raw_body:
        return None
    decoded = raw_body.decode("utf-8", errors="replace")
    try:
        parsed = json.loads(decoded)
    except ValueError:
        rendered = mask_text(decoded)
    else:
        rendered = json.dumps(mask_mapping(parsed), ensure_ascii=False)
    if len(rendered) > MAX_TRACED_BODY:
        rendered = rendered[:MAX_TRACED_BODY] + "...<truncated>"
    return rendered


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        logger = logging.getLogger("http")

        trace_http = get_settings().TRACE_HTTP
        request_body: str | None = None
        if trace_http:
            raw_body = await request.body()
            request_body = render_body(raw_body)

            async def receive():
                return {"type": "http.request", "body": raw_body, "more_body": False}

            request._receive = receive

        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed = time.perf_counter() - start
            logger.exception(
                "request_error method=%s route=%s status=%s duration_ms=%.3f request_id=%s",
                request.method,
                request.url.path,
                500,
                round(elapsed * 1000, 3),
                request_id,
                extra={
                    "extra": {
                        "method": request.method,
                        "route": request.url.path,
                        "status": 500,
                        "duration_ms": round(elapsed * 1000, 3),
                        "request_id": request_id,
                        "exception": repr(exc),
                    }
                },
            )
            raise

        elapsed = time.perf_counter() - start

        route_template = request.scope.get("route", None)
        if route_template and hasattr(route_template, "path"):
            route = route_template.path
        else:
            route = request.url.path

        status_code = response.status_code
        REQUESTS.labels(request.method, route, str(status_code)).inc()
        LATENCY.labels(request.method, route).observe(elapsed)

        if "X-Request-Id" not in response.headers:
            response.headers["X-Request-Id"] = request_id

        level = logging.INFO
        if status_code >= 500:
            level = logging.ERROR
        elif status_code >= 400:
            level = logging.WARNING

        duration_ms = round(elapsed * 1000, 3)
        extra_payload: dict[str, Any] = {
            "method": request.method,
            "route": route,
            "query": request.url.query,
            "status": status_code,
            "duration_ms": duration_ms,
            "request_id": request_id,
        }
        if trace_http:
            response_body = b""
            async for chunk in response.body_iterator:
                response_body += chunk
            response.body_iterator = iterate_in_threadpool(iter([response_body]))
            extra_payload["request_body"] = request_body
            extra_payload["response_body"] = render_body(response_body)

        logger.log(
            level,
            "request method=%s route=%s status=%s duration_ms=%.3f request_id=%s",
            request.method,
            route,
            status_code,
            duration_ms,
            request_id,
            extra={"extra": extra_payload},
        )
        return response

import time
import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from ..config import settings

logger = structlog.get_logger("slotkeeper.middleware")

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Cache-Control": "no-store",
}


class DistributedTracingMiddleware(BaseHTTPMiddleware):
    """Binds request id and tenant to every log line of the request."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        tenant_slug = (request.headers.get("X-Tenant-Slug") or "").strip().lower() or None

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=request.url.path,
            method=request.method,
            tenant_slug=tenant_slug,
        )

        start_time = time.perf_counter()
        try:
            response: Response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                error=str(exc),
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
            raise

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_finished",
            status=response.status_code,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
        )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        if settings.SECURITY_HEADERS_ENABLED:
            for name, value in _SECURITY_HEADERS.items():
                response.headers.setdefault(name, value)
        return response

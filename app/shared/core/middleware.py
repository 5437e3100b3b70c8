from collections.abc import Awaitable, Callable
import time
import uuid

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from app.shared.core.config import get_settings
from app.shared.core.ops_metrics import API_REQUEST_DURATION, API_REQUESTS_TOTAL


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        settings = get_settings()

        response = await call_next(request)

        # HSTS only over HTTPS, and never pinned in debug mode
        if request.url.scheme == "https":
            if settings.DEBUG:
                response.headers["Strict-Transport-Security"] = "max-age=0"
            else:
                response.headers["Strict-Transport-Security"] = (
                    "max-age=31536000; includeSubDomains"
                )

        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault(
            "Referrer-Policy", "strict-origin-when-cross-origin"
        )
        return response


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Injects a unique X-Request-ID into the logs and response, and records
    request count and latency.
    NOTE: This middleware trusts the X-Request-ID header if provided by the client.
    This is intended for correlation and debugging, not as a security principal.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        started = time.perf_counter()
        response = await call_next(request)

        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)
        API_REQUESTS_TOTAL.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=response.status_code,
        ).inc()
        API_REQUEST_DURATION.labels(method=request.method, endpoint=endpoint).observe(
            time.perf_counter() - started
        )

        response.headers["X-Request-ID"] = request_id
        return response

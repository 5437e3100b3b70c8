import inspect
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Sequence

import structlog
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.shared.core.app_routes import register_api_routers, register_lifecycle_routes
from app.shared.core.config import get_settings, reload_settings_from_environment
from app.shared.core.exceptions import DompetException
from app.shared.core.http import close_http_client, init_http_client
from app.shared.core.logging import setup_logging
from app.shared.core.middleware import RequestIDMiddleware, SecurityHeadersMiddleware
from app.shared.core.ops_metrics import API_ERRORS_TOTAL
from app.shared.core.rate_limit import setup_rate_limiting
from app.shared.db.session import get_engine

setup_logging()
settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()

    logger.info("app_starting", app_name=settings.APP_NAME, env=settings.ENVIRONMENT)

    # Shared pool for gateway calls.
    await init_http_client()

    yield

    logger.info("app_shutting_down")
    await close_http_client()
    await get_engine().dispose()
    logger.info("db_engine_disposed")


dompet_app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)
# Uvicorn looks for `app` by default.
app: FastAPI = dompet_app  # noqa: A001

__all__ = ["app", "dompet_app", "lifespan"]


@dompet_app.exception_handler(DompetException)
async def dompet_exception_handler(
    request: Request, exc: DompetException
) -> JSONResponse:
    """Handle custom application exceptions."""
    from app.shared.core.error_governance import handle_exception

    return handle_exception(request, exc)


@dompet_app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions with standardized format."""
    detail_text = str(exc.detail) if isinstance(exc.detail, str) else "Request failed"
    if settings.is_production and exc.status_code >= 500:
        detail_text = "An unexpected internal error occurred"

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=exc.status_code
    ).inc()
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": detail_text,
                "code": "http_error",
                "id": getattr(request.state, "request_id", None),
                "details": None,
            }
        },
        headers=getattr(exc, "headers", None),
    )


@dompet_app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors."""

    def _json_safe(value: Any) -> Any:
        if isinstance(value, Exception):
            return str(value)
        try:
            json.dumps(value)
            return value
        except (TypeError, ValueError):
            return str(value)

    def _sanitize_errors(errors: Sequence[Any]) -> List[Dict[str, Any]]:
        sanitized = []
        for err in errors:
            clean = dict(err)
            if "ctx" in clean and isinstance(clean["ctx"], dict):
                clean["ctx"] = {k: _json_safe(v) for k, v in clean["ctx"].items()}
            if "input" in clean:
                clean["input"] = _json_safe(clean["input"])
            sanitized.append(clean)
        return sanitized

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=422
    ).inc()
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "message": "The request body or parameters are invalid.",
                "code": "validation_error",
                "id": getattr(request.state, "request_id", None),
                "details": _sanitize_errors(exc.errors()),
            }
        },
    )


@dompet_app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Handle business logic ValueErrors via central governance."""
    from app.shared.core.error_governance import handle_exception

    return handle_exception(request, exc)


setup_rate_limiting(dompet_app)

original_handler = dompet_app.exception_handlers.get(
    RateLimitExceeded, _rate_limit_exceeded_handler
)


async def custom_rate_limit_handler(request: Request, exc: Exception) -> Response:
    if not isinstance(exc, RateLimitExceeded):
        raise exc
    API_ERRORS_TOTAL.labels(
        path=request.url.path,
        method=request.method,
        status_code=getattr(exc, "status_code", 429),
    ).inc()
    logger.warning("rate_limit_exceeded", path=request.url.path, limit=str(exc.detail))
    res = original_handler(request, exc)
    if inspect.isawaitable(res):
        return await res
    return res


dompet_app.add_exception_handler(RateLimitExceeded, custom_rate_limit_handler)


@dompet_app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Sanitized 500 for anything unhandled; the stack trace is logged."""
    from app.shared.core.error_governance import handle_exception

    return handle_exception(request, exc)


register_lifecycle_routes(
    dompet_app,
    app_name=settings.APP_NAME,
    version=settings.VERSION,
)

Instrumentator().instrument(dompet_app).expose(dompet_app)

# Middleware runs in reverse order of addition; CORS goes last so it runs first.
dompet_app.add_middleware(SecurityHeadersMiddleware)
dompet_app.add_middleware(RequestIDMiddleware)

if settings.CORS_ORIGINS and "*" in settings.CORS_ORIGINS:
    logger.error(
        "insecure_cors_config_detected",
        msg="allow_credentials=True with '*' origin is forbidden",
    )
    cors_allowed_origins = [o for o in settings.CORS_ORIGINS if o != "*"]
else:
    cors_allowed_origins = settings.CORS_ORIGINS

dompet_app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Callback-Token"],
)

register_api_routers(dompet_app)

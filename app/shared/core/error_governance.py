"""
Unified Error Governance

Centrally handles exception classification, sanitization, structured logging
and error metrics so every failure leaves the same trail.
"""

from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from app.shared.core.config import get_settings
from app.shared.core.exceptions import DompetException
from app.shared.core.ops_metrics import API_ERRORS_TOTAL

logger = structlog.get_logger()

# Codes whose messages are safe to show to clients even in production.
SAFE_CODES = {
    "auth_error",
    "forbidden",
    "not_found",
    "voucher_rejected",
    "voucher_limit_reached",
    "invalid_payment_state",
    "billing_error",
}


def handle_exception(
    request: Request, exc: Exception, error_id: Optional[str] = None
) -> JSONResponse:
    """
    Classifies and records exceptions, returning a standardized JSON response.
    """
    error_id = error_id or str(uuid4())

    # 1. Classification & Sanitization
    settings = get_settings()
    is_prod = settings.is_production

    if isinstance(exc, DompetException):
        app_exc = exc
        if is_prod and app_exc.code not in SAFE_CODES:
            app_exc.message = "An error occurred while processing your request"
    elif isinstance(exc, ValueError):
        msg = "Invalid request parameters" if is_prod else str(exc)
        app_exc = DompetException(
            message=msg,
            code="value_error",
            status_code=400,
        )
        logger.warning(
            "business_validation_error",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )
    else:
        # Unhandled exceptions never echo their message back.
        app_exc = DompetException(
            message="An unexpected internal error occurred",
            code="internal_error",
            status_code=500,
        )
        logger.exception(
            "unhandled_raw_exception",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )

    # 2. Metrics
    API_ERRORS_TOTAL.labels(
        path=request.url.path,
        method=request.method,
        status_code=app_exc.status_code,
    ).inc()

    # 3. Structured Logging
    log_method = logger.warning if app_exc.status_code < 500 else logger.error
    log_method(
        "api_error",
        error_id=error_id,
        code=app_exc.code,
        message=app_exc.message,
        status_code=app_exc.status_code,
        path=request.url.path,
        details=app_exc.details,
    )

    response_details: Optional[Dict[str, Any]] = app_exc.details
    if is_prod and app_exc.code not in SAFE_CODES:
        response_details = None

    response_payload = {
        "error": {
            "message": app_exc.message,
            "code": app_exc.code,
            "id": error_id,
            "details": response_details if response_details else None,
        }
    }

    return JSONResponse(
        status_code=app_exc.status_code,
        content=response_payload,
    )

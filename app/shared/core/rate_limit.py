"""
Rate limiting for Dompet

Provides API rate limiting using slowapi (built on the limits library).
Voucher validation is throttled harder than other reads to make code
guessing expensive.
"""

import hashlib
from typing import Any, Callable, cast

import structlog
from fastapi import FastAPI, Request
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from app.shared.core.config import get_settings

__all__ = [
    "get_limiter",
    "setup_rate_limiting",
    "rate_limit",
    "standard_limit",
    "auth_limit",
    "voucher_limit",
    "RateLimitExceeded",
]

logger = structlog.get_logger()

_limiter: Limiter | None = None

STANDARD_LIMIT = "100/minute"
AUTH_LIMIT = "30/minute"
VOUCHER_LIMIT = "10/minute"


def context_aware_key(request: Request) -> str:
    """
    Identifies the requester for rate limiting.
    1. Uses household_id once the auth dependency has populated request state.
    2. Falls back to a hash of the bearer token.
    3. Falls back to remote IP.
    """
    household_id = getattr(request.state, "household_id", None)
    if household_id:
        return f"household:{household_id}"

    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1]
        token_hash = hashlib.sha256(token.encode()).hexdigest()[:16]
        return f"token:{token_hash}"

    return get_remote_address(request)


def get_limiter() -> Limiter:
    """Lazy initialization of the Limiter instance (in-memory storage)."""
    global _limiter
    if _limiter is None:
        settings = get_settings()
        _limiter = Limiter(
            key_func=context_aware_key,
            storage_uri=settings.RATELIMIT_STORAGE_URI,
            strategy="fixed-window",
            enabled=settings.RATELIMIT_ENABLED and not settings.TESTING,
        )
    return _limiter


def setup_rate_limiting(app: FastAPI) -> None:
    """
    Configure rate limiting for the FastAPI application.
    """
    limiter = get_limiter()
    app.state.limiter = limiter

    def _rate_limit_handler(request: Request, exc: Exception) -> Any:
        return _rate_limit_exceeded_handler(request, cast(RateLimitExceeded, exc))

    app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)
    logger.info("rate_limiting_configured")


def rate_limit(
    limit: str | Callable[[Request], str] = STANDARD_LIMIT,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator to apply rate limiting to an endpoint."""
    # The limiter checks its 'enabled' flag per request, not at import time.
    return cast(
        Callable[[Callable[..., Any]], Callable[..., Any]], get_limiter().limit(limit)
    )


def standard_limit(func: Callable[..., Any]) -> Callable[..., Any]:
    """Apply the standard API limit decorator."""
    return rate_limit(STANDARD_LIMIT)(func)


def auth_limit(func: Callable[..., Any]) -> Callable[..., Any]:
    """Apply the authenticated-route API limit decorator."""
    return rate_limit(AUTH_LIMIT)(func)


def voucher_limit(func: Callable[..., Any]) -> Callable[..., Any]:
    """Apply the voucher validation limit decorator."""
    return rate_limit(VOUCHER_LIMIT)(func)

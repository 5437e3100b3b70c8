"""
Retry Logic with Exponential Backoff

Tenacity-based retries for idempotent outbound calls (gateway status reads).
Charge creation is never wrapped: a retried POST could double-charge.
"""

from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

import httpx
import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.shared.core.ops_metrics import record_retry_metrics

logger = structlog.get_logger()
T = TypeVar("T")

RETRY_CONFIGS: dict[str, dict[str, Any]] = {
    "external_api": {
        "max_attempts": 3,
        "min_wait": 0.5,
        "max_wait": 5.0,
        "multiplier": 0.5,
    },
}


def is_transient_http_error(exc: BaseException) -> bool:
    """Network errors, 429 and 5xx responses are worth retrying."""
    cause = exc.__cause__ if exc.__cause__ is not None else exc
    if isinstance(cause, httpx.TransportError):
        return True
    if isinstance(cause, httpx.HTTPStatusError):
        status = cause.response.status_code
        return status == 429 or status >= 500
    return False


def _log_before_sleep(operation_type: str) -> Callable[[RetryCallState], None]:
    def _before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        record_retry_metrics(operation_type, state.attempt_number)
        logger.warning(
            "operation_failed_will_retry",
            operation_type=operation_type,
            attempt=state.attempt_number,
            delay_seconds=round(state.next_action.sleep, 3) if state.next_action else None,
            error=str(exc) if exc else None,
            error_type=type(exc).__name__ if exc else None,
        )

    return _before_sleep


def tenacity_retry(
    operation_type: str = "external_api",
    retry_on: Callable[[BaseException], bool] = is_transient_http_error,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Decorator using tenacity for exponential backoff on transient failures.
    The last exception is re-raised once attempts are exhausted.
    """
    config = RETRY_CONFIGS[operation_type]

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @retry(
            stop=stop_after_attempt(config["max_attempts"]),
            wait=wait_exponential(
                multiplier=config["multiplier"],
                min=config["min_wait"],
                max=config["max_wait"],
            ),
            retry=retry_if_exception(retry_on),
            before_sleep=_log_before_sleep(operation_type),
            reraise=True,
        )
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await func(*args, **kwargs)

        return wrapper

    return decorator

import re
import sys
import structlog
import logging
from typing import Any, cast
from app.shared.core.config import get_settings


def pii_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Recursively redact common PII and sensitive fields from logs.
    Webhook callback tokens and gateway keys must never reach log sinks.
    """
    email_regex = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+")
    pii_fields = {
        "password",
        "token",
        "secret",
        "authorization",
        "auth",
        "api_key",
        "apikey",
        "access_token",
        "refresh_token",
        "client_secret",
        "callback_token",
        "x_callback_token",
        "va_number",
    }
    pii_suffixes = ("_token", "_secret", "_password", "_key")
    pii_contains = ("authorization", "secret", "apikey", "api_key")

    def is_sensitive_key(key: Any) -> bool:
        key_norm = str(key).lower().strip().replace("-", "_")
        if key_norm in pii_fields:
            return True
        if key_norm.endswith(pii_suffixes):
            return True
        return any(fragment in key_norm for fragment in pii_contains)

    def redact_recursive(data: Any) -> Any:
        if isinstance(data, dict):
            return {
                k: ("[REDACTED]" if is_sensitive_key(k) else redact_recursive(v))
                for k, v in data.items()
            }
        elif isinstance(data, list):
            return [redact_recursive(item) for item in data]
        elif isinstance(data, str):
            return email_regex.sub("[EMAIL_REDACTED]", data)
        return data

    redacted = redact_recursive(event_dict)
    if isinstance(redacted, dict):
        return cast(dict[str, Any], redacted)
    return {}


def setup_logging() -> None:
    settings = get_settings()

    # 1. Configure the common processors
    base_processors = [
        structlog.contextvars.merge_contextvars,  # Support async context
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        pii_redactor,  # Redact before rendering
    ]

    # 2. Choose the renderer based on environment
    if settings.DEBUG:
        renderer: Any = structlog.dev.ConsoleRenderer()
        processors = base_processors + [renderer]
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        processors = base_processors + [structlog.processors.dict_tracebacks, renderer]
        min_level = logging.INFO

    # 3. Apply the configuration
    structlog.configure(
        processors=cast(Any, processors),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # 4. Route standard logging (uvicorn, sqlalchemy) to the same stream.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=min_level,
    )


def audit_log(
    event: str,
    user_id: str | None,
    household_id: str | None,
    details: dict[str, Any] | None = None,
) -> None:
    """
    Standardized helper for money-moving and security-relevant events.
    Enforces a consistent schema for downstream ingestion.
    """
    logger = structlog.get_logger("audit")
    logger.info(
        event,
        user_id=str(user_id) if user_id else None,
        household_id=str(household_id) if household_id else None,
        metadata=details or {},
    )

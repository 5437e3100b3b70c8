"""Shared runtime state and primitives for Xendit billing modules."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

import structlog

from app.shared.core.config import get_settings

logger = structlog.get_logger()


class _SettingsProxy:
    """Lazy settings accessor to avoid stale module-level configuration."""

    def __getattr__(self, name: str) -> Any:
        return getattr(get_settings(), name)


settings: Any = _SettingsProxy()

XENDIT_GATEWAY = "xendit"

VIRTUAL_ACCOUNT_BANKS = ("BNI", "BRI", "MANDIRI", "PERMATA", "BCA")
EWALLET_TYPES = ("OVO", "DANA", "LINKAJA", "SHOPEEPAY")

# Our reference for each charge: "<PREFIX><payment uuid>".
REFERENCE_PREFIXES = {
    "invoice": "PAYMENT-",
    "virtual_account": "VA-",
    "ewallet": "EWALLET-",
    "qris": "QRIS-",
}


def build_reference(payment_method: str, payment_id: UUID) -> str:
    return f"{REFERENCE_PREFIXES[payment_method]}{payment_id}"


def extract_payment_id(reference: Optional[str]) -> Optional[UUID]:
    """Recover the payment id encoded in one of our references, if any."""
    if not reference:
        return None
    for prefix in REFERENCE_PREFIXES.values():
        if reference.startswith(prefix):
            try:
                return UUID(reference[len(prefix):])
            except ValueError:
                return None
    return None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def format_rupiah(amount: int) -> str:
    return "Rp " + f"{amount:,}".replace(",", ".")

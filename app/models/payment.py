from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    String,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    EXPIRED = "expired"


class PaymentMethod(str, Enum):
    INVOICE = "invoice"
    VIRTUAL_ACCOUNT = "virtual_account"
    EWALLET = "ewallet"
    QRIS = "qris"
    VOUCHER = "voucher"  # zero-total payments settled without the gateway


class Payment(Base):
    """
    One attempt to pay for a subscription period.

    Money columns are integer minor units: `total` = `amount` + `tax`, where
    `amount` is `original_amount` minus the voucher discount (floored at 0).
    """

    __tablename__ = "payments"
    __table_args__ = (
        Index("ix_payments_subscription_status", "subscription_id", "status"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    subscription_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True
    )
    household_id: Mapped[UUID] = mapped_column(
        ForeignKey("households.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    original_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    discount_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    tax: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="IDR", nullable=False)

    payment_method: Mapped[str] = mapped_column(String(30), nullable=False)
    voucher_id: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("vouchers.id", ondelete="SET NULL"), nullable=True
    )

    payment_gateway_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    payment_token: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    snap_token: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    refunded_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # "metadata" is reserved on declarative classes.
    payment_metadata: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata", JSON, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    @property
    def is_pending(self) -> bool:
        return self.status == PaymentStatus.PENDING.value

    @property
    def is_paid(self) -> bool:
        return self.status == PaymentStatus.PAID.value

    def merge_metadata(self, extra: dict[str, Any]) -> None:
        # Reassign so the JSON column is flagged dirty.
        self.payment_metadata = {**(self.payment_metadata or {}), **extra}

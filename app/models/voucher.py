from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


class VoucherType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class Voucher(Base):
    """
    Global discount code.

    `used_count` is only ever changed by the usage ledger and must stay
    within `max_uses` when a limit is set.
    """

    __tablename__ = "vouchers"
    __table_args__ = (
        CheckConstraint("used_count >= 0", name="used_count_non_negative"),
        CheckConstraint(
            "max_uses IS NULL OR used_count <= max_uses", name="used_count_within_max"
        ),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    # Percent (0-100) for percentage vouchers, minor units for fixed ones.
    value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    max_discount_amount: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )
    min_purchase_amount: Mapped[int] = mapped_column(
        BigInteger, default=0, nullable=False
    )

    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_uses_per_household: Mapped[int] = mapped_column(
        Integer, default=1, nullable=False
    )
    used_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Plan ids as strings; null or empty means every plan.
    applicable_plans: Mapped[Optional[list[str]]] = mapped_column(JSON, nullable=True)

    valid_from: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    valid_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_by: Mapped[Optional[UUID]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
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
    def remaining_uses(self) -> Optional[int]:
        if self.max_uses is None:
            return None
        return max(0, self.max_uses - self.used_count)


class VoucherUsage(Base):
    """One redemption of a voucher by a household for a specific payment."""

    __tablename__ = "voucher_usages"
    __table_args__ = (
        Index("ix_voucher_usages_voucher_household", "voucher_id", "household_id"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    voucher_id: Mapped[UUID] = mapped_column(
        ForeignKey("vouchers.id", ondelete="CASCADE"), nullable=False
    )
    household_id: Mapped[UUID] = mapped_column(
        ForeignKey("households.id", ondelete="CASCADE"), nullable=False
    )
    payment_id: Mapped[UUID] = mapped_column(
        ForeignKey("payments.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    discount_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

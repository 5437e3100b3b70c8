from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict
from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    Uuid as PG_UUID,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.shared.db.base import Base


class PlanType(str, Enum):
    FREE = "free"
    MONTHLY = "monthly"
    YEARLY = "yearly"
    LIFETIME = "lifetime"


class PlanFeatures(BaseModel):
    """
    Typed plan entitlements.

    Numeric limits use -1 for unlimited. Unknown keys stored in the JSON
    column are ignored on read.
    """

    model_config = ConfigDict(extra="ignore")

    max_users: int = 1
    max_transactions_per_month: int = 100
    max_ai_scans_per_month: int = 0
    max_ai_chats_per_month: int = 0
    storage_mb: int = 50
    invite_members: bool = False
    web_access: bool = False
    analytics: bool = False


class Plan(Base):
    """Read-only plan catalog entry. Prices are integer minor units."""

    __tablename__ = "plans"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    type: Mapped[str] = mapped_column(
        String(20), default=PlanType.MONTHLY.value, nullable=False
    )

    price: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    discount_price: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    price_yearly: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    discount_price_yearly: Mapped[Optional[int]] = mapped_column(
        BigInteger, nullable=True
    )
    currency: Mapped[str] = mapped_column(String(3), default="IDR", nullable=False)

    features: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_popular: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

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
    def effective_price(self) -> int:
        return self.discount_price if self.discount_price is not None else self.price

    @property
    def effective_yearly_price(self) -> Optional[int]:
        if self.discount_price_yearly is not None:
            return self.discount_price_yearly
        return self.price_yearly

    @property
    def typed_features(self) -> PlanFeatures:
        return PlanFeatures.model_validate(self.features or {})

    def price_for_cycle(self, billing_cycle: Optional[str]) -> int:
        """Base amount charged for one billing period of this plan."""
        if billing_cycle == PlanType.YEARLY.value:
            yearly = self.effective_yearly_price
            if yearly is not None:
                return yearly
        return self.effective_price

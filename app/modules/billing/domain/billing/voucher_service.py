"""
Voucher validation, discount calculation and the usage ledger.

Validation is read-only and may be called any number of times. Only the
ledger (`apply` / `reverse`) changes `Voucher.used_count`, and always in the
caller's transaction.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import NoReturn, Optional
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.payment import Payment
from app.models.voucher import Voucher, VoucherType, VoucherUsage
from app.shared.core.exceptions import VoucherLimitReachedError, VoucherRejectedError
from app.shared.core.logging import audit_log
from app.shared.core.ops_metrics import (
    VOUCHER_REDEMPTIONS_TOTAL,
    VOUCHER_VALIDATIONS_TOTAL,
)

from . import xendit_shared as shared


class RejectionReason(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_OR_EXPIRED = "invalid_or_expired"
    LIMIT_REACHED = "limit_reached"
    MINIMUM_NOT_MET = "minimum_not_met"
    PLAN_NOT_ELIGIBLE = "plan_not_eligible"
    HOUSEHOLD_LIMIT_REACHED = "household_limit_reached"


REJECTION_MESSAGES = {
    RejectionReason.NOT_FOUND: "Voucher code not found",
    RejectionReason.INVALID_OR_EXPIRED: "Voucher is invalid or expired",
    RejectionReason.LIMIT_REACHED: "Voucher usage limit reached",
    RejectionReason.MINIMUM_NOT_MET: "Minimum purchase amount not met",
    RejectionReason.PLAN_NOT_ELIGIBLE: "Voucher cannot be used for this plan",
    RejectionReason.HOUSEHOLD_LIMIT_REACHED: (
        "You have reached the usage limit for this voucher"
    ),
}


def normalize_code(code: str) -> str:
    return code.strip().upper()


def calculate_discount(voucher: Voucher, base_amount: int) -> int:
    """
    Discount in minor units for `base_amount`.

    Fixed vouchers take `min(value, base)`. Percentage vouchers round half up
    and are capped by `max_discount_amount` when one is set. The result is
    never negative and never exceeds the base amount.
    """
    if base_amount <= 0:
        return 0

    if voucher.type == VoucherType.FIXED.value:
        return max(0, min(int(voucher.value), base_amount))

    if voucher.type != VoucherType.PERCENTAGE.value:
        raise ValueError(f"Unsupported voucher type: {voucher.type}")

    # round_half_up(base * value / 100) in integer arithmetic
    discount = (base_amount * int(voucher.value) + 50) // 100
    if voucher.max_discount_amount is not None:
        discount = min(discount, int(voucher.max_discount_amount))
    return max(0, min(discount, base_amount))


class VoucherService:
    """Validator and usage ledger for vouchers."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_code(self, code: str) -> Optional[Voucher]:
        result = await self.db.execute(
            select(Voucher).where(Voucher.code == normalize_code(code))
        )
        return result.scalar_one_or_none()

    async def validate(
        self,
        code: str,
        household_id: UUID,
        plan_id: UUID,
        base_amount: int,
        now: Optional[datetime] = None,
    ) -> Voucher:
        """
        Check a code for a purchase, failing fast with the first reason found.

        Raises VoucherRejectedError; never mutates state.
        """
        voucher = await self.get_by_code(code)
        if voucher is None:
            self._reject(RejectionReason.NOT_FOUND, code=code)

        now = now or shared.utcnow()
        valid_from = shared.as_utc(voucher.valid_from)
        valid_until = shared.as_utc(voucher.valid_until)
        if (
            not voucher.is_active
            or (valid_from is not None and valid_from > now)
            or (valid_until is not None and valid_until < now)
        ):
            self._reject(RejectionReason.INVALID_OR_EXPIRED, code=voucher.code)

        # Advisory only; the ledger re-checks under lock.
        if voucher.max_uses is not None and voucher.used_count >= voucher.max_uses:
            self._reject(RejectionReason.LIMIT_REACHED, code=voucher.code)

        if base_amount < voucher.min_purchase_amount:
            self._reject(
                RejectionReason.MINIMUM_NOT_MET,
                code=voucher.code,
                min_purchase_amount=voucher.min_purchase_amount,
            )

        if voucher.applicable_plans:
            eligible = {str(p) for p in voucher.applicable_plans}
            if str(plan_id) not in eligible:
                self._reject(RejectionReason.PLAN_NOT_ELIGIBLE, code=voucher.code)

        household_uses = await self.db.scalar(
            select(func.count())
            .select_from(VoucherUsage)
            .where(
                VoucherUsage.voucher_id == voucher.id,
                VoucherUsage.household_id == household_id,
            )
        )
        if (household_uses or 0) >= voucher.max_uses_per_household:
            self._reject(RejectionReason.HOUSEHOLD_LIMIT_REACHED, code=voucher.code)

        VOUCHER_VALIDATIONS_TOTAL.labels(result="valid").inc()
        return voucher

    def _reject(self, reason: RejectionReason, code: str, **details: object) -> NoReturn:
        VOUCHER_VALIDATIONS_TOTAL.labels(result=reason.value).inc()
        shared.logger.info("voucher_rejected", code=code, reason=reason.value)
        raise VoucherRejectedError(
            REJECTION_MESSAGES[reason], reason=reason.value, details=dict(details)
        )

    async def apply(self, voucher: Voucher, payment: Payment) -> VoucherUsage:
        """
        Redeem `voucher` for `payment`.

        Idempotent per payment. The voucher row is locked and the counter is
        bumped with a guarded UPDATE, so concurrent callers can never push
        `used_count` past `max_uses`.
        """
        existing = await self.db.scalar(
            select(VoucherUsage).where(VoucherUsage.payment_id == payment.id)
        )
        if existing is not None:
            shared.logger.info(
                "voucher_apply_already_recorded",
                payment_id=str(payment.id),
                voucher_id=str(existing.voucher_id),
            )
            return existing

        locked = (
            await self.db.execute(
                select(Voucher)
                .where(Voucher.id == voucher.id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if locked is None:
            self._reject(RejectionReason.NOT_FOUND, code=voucher.code)

        if locked.max_uses is not None and locked.used_count >= locked.max_uses:
            self._race_lost(locked, payment)

        result = await self.db.execute(
            update(Voucher)
            .where(
                Voucher.id == locked.id,
                or_(Voucher.max_uses.is_(None), Voucher.used_count < Voucher.max_uses),
            )
            .values(used_count=Voucher.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self._race_lost(locked, payment)
        await self.db.refresh(locked, attribute_names=["used_count"])

        usage = VoucherUsage(
            voucher_id=locked.id,
            household_id=payment.household_id,
            payment_id=payment.id,
            discount_amount=calculate_discount(locked, payment.original_amount),
        )
        self.db.add(usage)
        await self.db.flush()

        VOUCHER_REDEMPTIONS_TOTAL.labels(action="applied").inc()
        shared.logger.info(
            "voucher_applied",
            voucher_id=str(locked.id),
            code=locked.code,
            payment_id=str(payment.id),
            household_id=str(payment.household_id),
            discount_amount=usage.discount_amount,
            used_count=locked.used_count,
        )
        return usage

    def _race_lost(self, voucher: Voucher, payment: Payment) -> NoReturn:
        VOUCHER_REDEMPTIONS_TOTAL.labels(action="race_lost").inc()
        shared.logger.warning(
            "voucher_limit_race_lost",
            voucher_id=str(voucher.id),
            payment_id=str(payment.id),
            max_uses=voucher.max_uses,
        )
        raise VoucherLimitReachedError(details={"code": voucher.code})

    async def reverse(self, payment: Payment) -> bool:
        """
        Undo the redemption recorded for `payment`.

        Returns False when there is nothing to reverse.
        """
        usage = await self.db.scalar(
            select(VoucherUsage).where(VoucherUsage.payment_id == payment.id)
        )
        if usage is None:
            shared.logger.debug("voucher_reverse_noop", payment_id=str(payment.id))
            return False

        await self.db.execute(
            update(Voucher)
            .where(Voucher.id == usage.voucher_id, Voucher.used_count > 0)
            .values(used_count=Voucher.used_count - 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.delete(usage)
        await self.db.flush()

        VOUCHER_REDEMPTIONS_TOTAL.labels(action="reversed").inc()
        audit_log(
            "voucher_usage_reversed",
            user_id=str(payment.user_id) if payment.user_id else None,
            household_id=str(payment.household_id),
            details={
                "voucher_id": str(usage.voucher_id),
                "payment_id": str(payment.id),
                "discount_amount": usage.discount_amount,
            },
        )
        return True

    async def list_available(self, search: Optional[str] = None) -> list[Voucher]:
        """Active vouchers whose window has not ended, newest first."""
        now = shared.utcnow()
        stmt = select(Voucher).where(
            Voucher.is_active.is_(True),
            or_(Voucher.valid_until.is_(None), Voucher.valid_until > now),
        )
        if search:
            pattern = f"%{search.strip()}%"
            stmt = stmt.where(
                or_(Voucher.code.ilike(pattern), Voucher.name.ilike(pattern))
            )
        result = await self.db.execute(stmt.order_by(Voucher.created_at.desc()))
        return list(result.scalars().all())

"""
Payment settlement orchestrator.

Owns the payment state machine (pending -> paid | failed | expired) and
subscription activation. Synchronous settlement (zero-total payments) and
gateway callbacks go through the same handlers, so activation happens in
exactly one place.

`create_payment`, `cancel_payment` and `sync_payment_status` are units of
work and commit. The `handle_*` transitions run inside the caller's
transaction and only flush.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

from dateutil.relativedelta import relativedelta
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.household import Household, User
from app.models.invoice import Invoice, InvoiceStatus
from app.models.payment import Payment, PaymentMethod, PaymentStatus
from app.models.plan import Plan, PlanType
from app.models.subscription import BillingCycle, Subscription, SubscriptionStatus
from app.models.voucher import Voucher, VoucherUsage
from app.shared.core.auth import CurrentUser
from app.shared.core.exceptions import (
    BillingError,
    DompetException,
    ForbiddenError,
    PaymentGatewayError,
    PaymentStateError,
    ResourceNotFoundError,
    VoucherLimitReachedError,
    VoucherRejectedError,
)
from app.shared.core.ops_metrics import (
    PAYMENT_SETTLEMENTS_TOTAL,
    PAYMENTS_CREATED_TOTAL,
)

from . import xendit_shared as shared
from .voucher_service import VoucherService, calculate_discount
from .xendit_client_impl import ChargeDetails, XenditClient

GATEWAY_SUCCESS_STATUSES = {"PAID", "SETTLED", "SUCCEEDED", "CAPTURED", "COMPLETED"}
GATEWAY_FAILURE_STATUSES = {"FAILED"}
GATEWAY_EXPIRY_STATUSES = {"EXPIRED", "VOIDED", "INACTIVE"}


class PendingPaymentExistsError(BillingError):
    """Raised when a subscription already has a payment awaiting settlement."""

    def __init__(self, payment: Payment):
        super().__init__(
            "There is already a pending payment",
            code="pending_payment_exists",
            details={"payment_id": str(payment.id)},
        )
        self.payment = payment


@dataclass
class PaymentCreation:
    payment: Payment
    settled: bool
    instructions: dict[str, Any] = field(default_factory=dict)


def compute_expiry(billing_cycle: Optional[str], start: datetime) -> Optional[datetime]:
    """End of the first period for a cycle. Lifetime and free never expire."""
    if billing_cycle == BillingCycle.YEARLY.value:
        return start + relativedelta(years=1)
    if billing_cycle in (BillingCycle.LIFETIME.value, BillingCycle.FREE.value):
        return None
    return start + relativedelta(months=1)


class PaymentSettlementService:
    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[XenditClient] = None,
        vouchers: Optional[VoucherService] = None,
    ):
        self.db = db
        self._gateway = gateway
        self.vouchers = vouchers or VoucherService(db)

    @property
    def gateway(self) -> XenditClient:
        if self._gateway is None:
            self._gateway = XenditClient()
        return self._gateway

    # ------------------------------------------------------------------
    # Lookups and authorization
    # ------------------------------------------------------------------

    async def _load_subscription_for(
        self, user: CurrentUser, subscription_id: UUID
    ) -> Subscription:
        subscription = await self.db.get(Subscription, subscription_id)
        if subscription is None:
            raise ResourceNotFoundError("Subscription not found")
        if subscription.household_id != user.household_id:
            shared.logger.warning(
                "payment_household_mismatch",
                user_id=str(user.id),
                subscription_id=str(subscription_id),
            )
            raise ForbiddenError("Unauthorized")
        if not user.can_manage_billing:
            raise ForbiddenError("Only owner or billing owner can make payments")
        return subscription

    async def get_payment_for(self, user: CurrentUser, payment_id: UUID) -> Payment:
        payment = await self.db.get(Payment, payment_id)
        if payment is None:
            raise ResourceNotFoundError("Payment not found")
        if payment.household_id != user.household_id:
            raise ForbiddenError("Unauthorized")
        return payment

    async def list_payments(
        self, household_id: UUID, page: int = 1, per_page: int = 20
    ) -> tuple[list[Payment], int]:
        total = await self.db.scalar(
            select(func.count())
            .select_from(Payment)
            .where(Payment.household_id == household_id)
        )
        result = await self.db.execute(
            select(Payment)
            .where(Payment.household_id == household_id)
            .order_by(Payment.created_at.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        )
        return list(result.scalars().all()), int(total or 0)

    async def find_pending_payment(self, subscription_id: UUID) -> Optional[Payment]:
        return await self.db.scalar(
            select(Payment).where(
                Payment.subscription_id == subscription_id,
                Payment.status == PaymentStatus.PENDING.value,
            )
        )

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_payment(
        self,
        user: CurrentUser,
        subscription_id: UUID,
        payment_method: str,
        bank_code: Optional[str] = None,
        ewallet_type: Optional[str] = None,
        voucher_code: Optional[str] = None,
    ) -> PaymentCreation:
        """
        Create a payment for one billing period of `subscription_id`.

        Voucher rejections surface before anything is written. Every later
        failure (lost voucher race, gateway error) rolls back the payment row,
        the usage row and the counter together.
        """
        subscription = await self._load_subscription_for(user, subscription_id)

        pending = await self.find_pending_payment(subscription.id)
        if pending is not None:
            raise PendingPaymentExistsError(pending)

        plan = await self.db.get(Plan, subscription.plan_id)
        if plan is None:
            raise ResourceNotFoundError("Plan not found")

        billing_cycle = subscription.billing_cycle or plan.type
        original_amount = plan.price_for_cycle(billing_cycle)

        voucher = None
        discount = 0
        if voucher_code:
            voucher = await self.vouchers.validate(
                voucher_code, subscription.household_id, plan.id, original_amount
            )
            discount = calculate_discount(voucher, original_amount)

        payer = await self.db.get(User, user.id)

        try:
            payment = Payment(
                id=uuid4(),
                subscription_id=subscription.id,
                household_id=subscription.household_id,
                user_id=user.id,
                original_amount=original_amount,
                discount_amount=discount,
                amount=max(0, original_amount - discount),
                tax=0,
                total=max(0, original_amount - discount),
                currency=plan.currency,
                payment_method=payment_method,
                voucher_id=voucher.id if voucher else None,
                status=PaymentStatus.PENDING.value,
                payment_metadata={"billing_cycle": billing_cycle},
            )
            self.db.add(payment)
            await self.db.flush()

            if voucher is not None:
                usage = await self.vouchers.apply(voucher, payment)
                # The ledger snapshot is authoritative.
                payment.discount_amount = usage.discount_amount
                payment.amount = max(0, original_amount - usage.discount_amount)
                payment.total = payment.amount + payment.tax

            if payment.total == 0:
                if voucher is not None:
                    payment.payment_method = PaymentMethod.VOUCHER.value
                await self.handle_payment_success(
                    payment,
                    {"payment_channel": payment.payment_method, "paid_amount": 0},
                )
                await self.db.commit()
                PAYMENTS_CREATED_TOTAL.labels(
                    payment_method=payment.payment_method, path="zero_total"
                ).inc()
                shared.logger.info(
                    "payment_created",
                    payment_id=str(payment.id),
                    path="zero_total",
                    original_amount=original_amount,
                    discount_amount=payment.discount_amount,
                )
                return PaymentCreation(payment=payment, settled=True)

            charge = await self.gateway.create_charge(
                payment,
                payment_method,
                ChargeDetails(
                    item_name=f"{plan.name} Plan",
                    customer_name=payer.name if payer else user.email,
                    customer_email=user.email,
                    bank_code=bank_code,
                    ewallet_type=ewallet_type,
                ),
            )
            payment.payment_gateway_id = charge.gateway_id
            payment.payment_token = charge.reference
            payment.snap_token = charge.display
            payment.merge_metadata({"payment_method": payment_method, **charge.metadata})
            await self.db.commit()
        except (DompetException, ValueError):
            await self.db.rollback()
            raise
        except Exception as exc:
            await self.db.rollback()
            shared.logger.exception(
                "payment_creation_failed",
                subscription_id=str(subscription_id),
                payment_method=payment_method,
                error=str(exc),
            )
            raise PaymentGatewayError("Failed to create payment") from exc

        PAYMENTS_CREATED_TOTAL.labels(payment_method=payment_method, path="gateway").inc()
        shared.logger.info(
            "payment_created",
            payment_id=str(payment.id),
            path="gateway",
            payment_method=payment_method,
            gateway_id=charge.gateway_id,
            total=payment.total,
        )
        return PaymentCreation(
            payment=payment, settled=False, instructions=charge.instructions
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def handle_payment_success(
        self, payment: Payment, gateway_data: dict[str, Any]
    ) -> bool:
        """
        Mark `payment` paid and activate its subscription.

        Returns False when the payment was already paid (duplicate delivery),
        or when a late success for a failed/expired payment can no longer be
        covered by its voucher. The latter stays terminal and is flagged for
        refund.
        """
        if payment.is_paid:
            PAYMENT_SETTLEMENTS_TOTAL.labels(outcome="duplicate").inc()
            shared.logger.info("payment_already_paid", payment_id=str(payment.id))
            return False

        if payment.status != PaymentStatus.PENDING.value:
            if not await self._reclaim_voucher(payment):
                return False
            shared.logger.warning(
                "payment_settled_after_terminal_state",
                payment_id=str(payment.id),
                previous_status=payment.status,
            )

        now = shared.utcnow()
        payment.status = PaymentStatus.PAID.value
        payment.paid_at = now
        if gateway_data.get("id") and not payment.payment_gateway_id:
            payment.payment_gateway_id = str(gateway_data["id"])
        payment.merge_metadata(
            {
                "paid_via": gateway_data.get("payment_channel") or "unknown",
                "paid_amount": gateway_data.get("paid_amount", payment.total),
                "xendit_fee": gateway_data.get("xendit_fee", 0),
                "gateway_payment_id": gateway_data.get("payment_id"),
            }
        )

        await self.activate_subscription(payment, now)
        await self._issue_invoice(payment)
        await self.db.flush()

        PAYMENT_SETTLEMENTS_TOTAL.labels(outcome="paid").inc()
        shared.logger.info(
            "payment_marked_paid",
            payment_id=str(payment.id),
            paid_via=payment.payment_metadata.get("paid_via") if payment.payment_metadata else None,
        )
        return True

    async def _reclaim_voucher(self, payment: Payment) -> bool:
        """
        Re-record the voucher use of a terminal payment before a late success
        settles it. Cancel and expiry gave the slot back, so it is redeemed
        again under the voucher lock; when the slot is gone the payment is left
        alone and marked `refund_required`.
        """
        if not payment.voucher_id and not payment.discount_amount:
            return True

        voucher = (
            await self.db.get(Voucher, payment.voucher_id)
            if payment.voucher_id
            else None
        )
        usage: Optional[VoucherUsage] = None
        if voucher is not None:
            try:
                usage = await self.vouchers.apply(voucher, payment)
            except (VoucherLimitReachedError, VoucherRejectedError):
                usage = None

        if usage is None:
            payment.merge_metadata(
                {
                    "refund_required": True,
                    "refund_reason": "voucher_unavailable",
                    "late_success_at": shared.utcnow().isoformat(),
                }
            )
            await self.db.flush()
            PAYMENT_SETTLEMENTS_TOTAL.labels(outcome="refund_required").inc()
            shared.logger.error(
                "late_payment_success_rejected",
                payment_id=str(payment.id),
                status=payment.status,
                voucher_id=str(payment.voucher_id) if payment.voucher_id else None,
            )
            return False

        # The customer was charged at the original discount.
        usage.discount_amount = payment.discount_amount
        return True

    async def handle_payment_failed(
        self, payment: Payment, gateway_data: dict[str, Any]
    ) -> bool:
        """Record a gateway-reported failure. Paid payments are never downgraded."""
        if payment.is_paid:
            shared.logger.warning(
                "payment_failure_ignored_already_paid", payment_id=str(payment.id)
            )
            return False
        if not payment.is_pending:
            shared.logger.info(
                "payment_failure_ignored_not_pending",
                payment_id=str(payment.id),
                status=payment.status,
            )
            return False

        payment.status = PaymentStatus.FAILED.value
        payment.failed_at = shared.utcnow()
        payment.merge_metadata(
            {
                "failure_code": gateway_data.get("failure_code") or "unknown",
                "failure_message": gateway_data.get("failure_message"),
            }
        )

        if payment.subscription_id:
            subscription = await self.db.get(Subscription, payment.subscription_id)
            if subscription is not None:
                subscription.status = SubscriptionStatus.EXPIRED.value
        await self.db.flush()

        PAYMENT_SETTLEMENTS_TOTAL.labels(outcome="failed").inc()
        shared.logger.info(
            "payment_marked_failed",
            payment_id=str(payment.id),
            failure_code=payment.payment_metadata.get("failure_code") if payment.payment_metadata else None,
        )
        return True

    async def handle_payment_expired(
        self, payment: Payment, gateway_data: dict[str, Any]
    ) -> bool:
        """Expire a pending payment and give its voucher use back."""
        if not payment.is_pending:
            shared.logger.info(
                "payment_expiry_ignored_not_pending",
                payment_id=str(payment.id),
                status=payment.status,
            )
            return False

        await self.vouchers.reverse(payment)
        payment.status = PaymentStatus.EXPIRED.value
        payment.merge_metadata(
            {
                "expired_at": gateway_data.get("updated") or shared.utcnow().isoformat(),
                "expiry_reason": gateway_data.get("status") or "expired",
            }
        )
        await self.db.flush()

        PAYMENT_SETTLEMENTS_TOTAL.labels(outcome="expired").inc()
        shared.logger.info("payment_marked_expired", payment_id=str(payment.id))
        return True

    async def cancel_payment(self, user: CurrentUser, payment_id: UUID) -> Payment:
        payment = await self.get_payment_for(user, payment_id)
        if not user.can_manage_billing:
            raise ForbiddenError("Only owner or billing owner can cancel payments")
        if not payment.is_pending:
            raise PaymentStateError(
                "Only pending payments can be canceled",
                details={"status": payment.status},
            )

        try:
            await self.vouchers.reverse(payment)
            payment.status = PaymentStatus.EXPIRED.value
            payment.merge_metadata(
                {
                    "canceled_at": shared.utcnow().isoformat(),
                    "canceled_by": str(user.id),
                }
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        PAYMENT_SETTLEMENTS_TOTAL.labels(outcome="canceled").inc()
        shared.logger.info(
            "payment_canceled", payment_id=str(payment.id), user_id=str(user.id)
        )
        return payment

    async def apply_gateway_status(
        self, payment: Payment, status: str, gateway_data: dict[str, Any]
    ) -> Optional[str]:
        """
        Route a gateway status string to the matching transition.

        Returns the outcome name, or None when the status needs no action.
        """
        normalized = (status or "").upper()
        if normalized in GATEWAY_SUCCESS_STATUSES:
            await self.handle_payment_success(payment, gateway_data)
            return "paid" if payment.is_paid else "refund_required"
        if normalized in GATEWAY_FAILURE_STATUSES:
            await self.handle_payment_failed(payment, gateway_data)
            return "failed"
        if normalized in GATEWAY_EXPIRY_STATUSES:
            await self.handle_payment_expired(payment, gateway_data)
            return "expired"
        shared.logger.info(
            "gateway_status_no_action", payment_id=str(payment.id), status=normalized
        )
        return None

    async def sync_payment_status(self, user: CurrentUser, payment_id: UUID) -> Payment:
        """
        Pull the current status of a pending payment from the gateway.

        Gateway read failures are logged and the local snapshot is returned.
        """
        payment = await self.get_payment_for(user, payment_id)
        if not payment.is_pending or not payment.payment_gateway_id:
            return payment

        try:
            if payment.payment_method == PaymentMethod.INVOICE.value:
                remote = await self.gateway.get_invoice(payment.payment_gateway_id)
            else:
                remote = await self.gateway.get_payment_request(
                    payment.payment_gateway_id
                )
        except PaymentGatewayError as exc:
            shared.logger.warning(
                "payment_status_sync_failed", payment_id=str(payment.id), error=str(exc)
            )
            return payment

        remote_data = {
            "id": remote.get("id"),
            "payment_channel": remote.get("payment_channel")
            or (remote.get("payment_method") or {}).get("type"),
            "paid_amount": remote.get("paid_amount", remote.get("amount")),
            "failure_code": remote.get("failure_code"),
            "status": remote.get("status"),
            "updated": remote.get("updated"),
        }
        try:
            await self.apply_gateway_status(payment, str(remote.get("status", "")), remote_data)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return payment

    # ------------------------------------------------------------------
    # Activation and invoicing
    # ------------------------------------------------------------------

    async def activate_subscription(
        self, payment: Payment, now: Optional[datetime] = None
    ) -> Optional[Subscription]:
        """
        Activate the subscription paid for by `payment` and point the household
        at it. This is the only writer of `Household.current_subscription_id`.
        """
        if not payment.subscription_id:
            return None
        subscription = await self.db.get(Subscription, payment.subscription_id)
        if subscription is None:
            shared.logger.warning(
                "activation_subscription_missing",
                payment_id=str(payment.id),
                subscription_id=str(payment.subscription_id),
            )
            return None

        cycle = subscription.billing_cycle
        if cycle is None:
            plan = await self.db.get(Plan, subscription.plan_id)
            cycle = plan.type if plan else PlanType.MONTHLY.value

        now = now or shared.utcnow()
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.started_at = now
        subscription.expires_at = compute_expiry(cycle, now)

        household = await self.db.get(Household, subscription.household_id)
        if household is not None:
            household.current_subscription_id = subscription.id

        shared.logger.info(
            "subscription_activated",
            subscription_id=str(subscription.id),
            household_id=str(subscription.household_id),
            billing_cycle=cycle,
            expires_at=subscription.expires_at.isoformat() if subscription.expires_at else None,
        )
        return subscription

    async def _next_invoice_number(self, now: datetime) -> str:
        prefix = f"INV-{now:%Y%m%d}-"
        last = await self.db.scalar(
            select(func.max(Invoice.invoice_number)).where(
                Invoice.invoice_number.like(f"{prefix}%")
            )
        )
        sequence = int(last[-4:]) + 1 if last else 1
        return f"{prefix}{sequence:04d}"

    async def _issue_invoice(self, payment: Payment) -> Invoice:
        invoice = await self.db.scalar(
            select(Invoice).where(Invoice.payment_id == payment.id)
        )
        if invoice is not None:
            invoice.status = InvoiceStatus.PAID.value
            invoice.paid_at = payment.paid_at
            shared.logger.info("invoice_marked_paid", invoice_id=str(invoice.id))
            return invoice

        plan_name = "Unknown Plan"
        if payment.subscription_id:
            subscription = await self.db.get(Subscription, payment.subscription_id)
            plan = await self.db.get(Plan, subscription.plan_id) if subscription else None
            if plan is not None:
                plan_name = plan.name

        line_items: list[dict[str, Any]] = [
            {
                "description": f"{plan_name} Plan",
                "quantity": 1,
                "unit_price": payment.original_amount,
                "amount": payment.original_amount,
            }
        ]
        if payment.discount_amount:
            line_items.append(
                {
                    "description": "Voucher discount",
                    "quantity": 1,
                    "unit_price": -payment.discount_amount,
                    "amount": -payment.discount_amount,
                }
            )

        now = shared.utcnow()
        invoice = Invoice(
            household_id=payment.household_id,
            payment_id=payment.id,
            subscription_id=payment.subscription_id,
            invoice_number=await self._next_invoice_number(now),
            amount=payment.amount,
            tax=payment.tax,
            total=payment.total,
            currency=payment.currency,
            status=InvoiceStatus.PAID.value,
            description=f"Subscription Payment - {plan_name}",
            line_items=line_items,
            issued_at=now,
            paid_at=payment.paid_at,
        )
        self.db.add(invoice)
        shared.logger.info(
            "invoice_created",
            payment_id=str(payment.id),
            invoice_number=invoice.invoice_number,
        )
        return invoice

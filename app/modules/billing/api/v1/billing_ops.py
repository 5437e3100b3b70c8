from __future__ import annotations

from typing import Any, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.invoice import Invoice
from app.models.payment import Payment
from app.models.plan import Plan
from app.models.subscription import Subscription
from app.models.voucher import Voucher, VoucherType, VoucherUsage
from app.modules.billing.api.v1.billing_models import (
    AdminVoucherResponse,
    InvoiceResponse,
    InvoiceSubscriptionSummary,
    PaymentResponse,
    PaymentSubscriptionSummary,
    PlanResponse,
    PublicVoucher,
    VoucherCreate,
    VoucherUpdate,
)
from app.modules.billing.domain.billing.voucher_service import normalize_code
from app.modules.billing.domain.billing.xendit_shared import format_rupiah, utcnow
from app.shared.core.auth import CurrentUser
from app.shared.core.exceptions import (
    BillingError,
    ForbiddenError,
    ResourceNotFoundError,
)
from app.shared.core.logging import audit_log


async def serialize_payment(db: AsyncSession, payment: Payment) -> PaymentResponse:
    metadata = payment.payment_metadata or {}
    subscription_summary = None
    if payment.subscription_id:
        subscription = await db.get(Subscription, payment.subscription_id)
        if subscription is not None:
            plan = await db.get(Plan, subscription.plan_id)
            subscription_summary = PaymentSubscriptionSummary(
                id=subscription.id, plan_name=plan.name if plan else None
            )

    return PaymentResponse(
        id=payment.id,
        original_amount=payment.original_amount,
        discount_amount=payment.discount_amount,
        amount=payment.amount,
        tax=payment.tax,
        total=payment.total,
        formatted_total=format_rupiah(payment.total),
        currency=payment.currency,
        status=payment.status,
        payment_method=payment.payment_method,
        voucher_id=payment.voucher_id,
        payment_url=payment.snap_token,
        va_number=metadata.get("va_number"),
        bank_code=metadata.get("bank_code"),
        created_at=payment.created_at,
        paid_at=payment.paid_at,
        subscription=subscription_summary,
    )


async def serialize_invoice(db: AsyncSession, invoice: Invoice) -> InvoiceResponse:
    subscription_summary = None
    if invoice.subscription_id:
        subscription = await db.get(Subscription, invoice.subscription_id)
        if subscription is not None:
            plan = await db.get(Plan, subscription.plan_id)
            subscription_summary = InvoiceSubscriptionSummary(
                id=subscription.id, plan_name=plan.name if plan else None
            )

    return InvoiceResponse(
        id=invoice.id,
        invoice_number=invoice.invoice_number,
        payment_id=invoice.payment_id,
        amount=invoice.amount,
        tax=invoice.tax,
        total=invoice.total,
        formatted_total=format_rupiah(invoice.total),
        currency=invoice.currency,
        status=invoice.status,
        description=invoice.description,
        line_items=invoice.line_items or [],
        issued_at=invoice.issued_at,
        due_at=invoice.due_at,
        paid_at=invoice.paid_at,
        subscription=subscription_summary,
        created_at=invoice.created_at,
    )


async def list_household_invoices(
    db: AsyncSession, household_id: UUID, page: int = 1, per_page: int = 20
) -> tuple[list[Invoice], int]:
    total = await db.scalar(
        select(func.count())
        .select_from(Invoice)
        .where(Invoice.household_id == household_id)
    )
    result = await db.execute(
        select(Invoice)
        .where(Invoice.household_id == household_id)
        .order_by(Invoice.created_at.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return list(result.scalars().all()), int(total or 0)


async def load_invoice_for(
    db: AsyncSession, user: CurrentUser, invoice_id: UUID
) -> Invoice:
    invoice = await db.get(Invoice, invoice_id)
    if invoice is None:
        raise ResourceNotFoundError("Invoice not found")
    if invoice.household_id != user.household_id:
        raise ForbiddenError("Unauthorized")
    return invoice


def serialize_plan(plan: Plan) -> PlanResponse:
    return PlanResponse(
        id=plan.id,
        name=plan.name,
        slug=plan.slug,
        type=plan.type,
        price=plan.price,
        discount_price=plan.discount_price,
        effective_price=plan.effective_price,
        price_yearly=plan.price_yearly,
        discount_price_yearly=plan.discount_price_yearly,
        effective_yearly_price=plan.effective_yearly_price,
        currency=plan.currency,
        description=plan.description,
        is_popular=plan.is_popular,
        features=plan.typed_features.model_dump(),
    )


async def load_public_plans(db: AsyncSession) -> list[PlanResponse]:
    result = await db.execute(
        select(Plan)
        .where(Plan.is_active.is_(True))
        .order_by(Plan.sort_order, Plan.price)
    )
    return [serialize_plan(plan) for plan in result.scalars().all()]


async def load_active_plan(db: AsyncSession, plan_id: UUID) -> Plan:
    plan = await db.get(Plan, plan_id)
    if plan is None or not plan.is_active:
        raise ResourceNotFoundError("Plan not found")
    return plan


def serialize_public_voucher(voucher: Voucher) -> PublicVoucher:
    return PublicVoucher(
        code=voucher.code,
        name=voucher.name,
        description=voucher.description,
        type=voucher.type,
        value=voucher.value,
        max_discount_amount=voucher.max_discount_amount,
        min_purchase_amount=voucher.min_purchase_amount,
        valid_until=voucher.valid_until,
        remaining_uses=voucher.remaining_uses,
    )


def serialize_admin_voucher(voucher: Voucher) -> AdminVoucherResponse:
    return AdminVoucherResponse.model_validate(voucher, from_attributes=True)


async def list_admin_vouchers(
    db: AsyncSession, search: Optional[str] = None
) -> list[AdminVoucherResponse]:
    stmt = select(Voucher)
    if search:
        pattern = f"%{search.strip()}%"
        stmt = stmt.where(Voucher.code.ilike(pattern) | Voucher.name.ilike(pattern))
    result = await db.execute(stmt.order_by(Voucher.created_at.desc()))
    return [serialize_admin_voucher(v) for v in result.scalars().all()]


async def create_voucher(
    db: AsyncSession, payload: VoucherCreate, actor: CurrentUser
) -> Voucher:
    voucher = Voucher(
        code=normalize_code(payload.code),
        name=payload.name,
        description=payload.description,
        type=payload.type.value,
        value=payload.value,
        max_discount_amount=payload.max_discount_amount,
        min_purchase_amount=payload.min_purchase_amount,
        max_uses=payload.max_uses,
        max_uses_per_household=payload.max_uses_per_household,
        applicable_plans=(
            [str(p) for p in payload.applicable_plans]
            if payload.applicable_plans
            else None
        ),
        valid_from=payload.valid_from or utcnow(),
        valid_until=payload.valid_until,
        is_active=payload.is_active,
        created_by=actor.id,
    )
    db.add(voucher)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise BillingError(
            "Voucher code already exists", code="voucher_code_taken"
        ) from exc
    await db.refresh(voucher)

    audit_log(
        "voucher_created",
        user_id=str(actor.id),
        household_id=None,
        details={"voucher_id": str(voucher.id), "code": voucher.code},
    )
    return voucher


async def update_voucher(
    db: AsyncSession, voucher_id: UUID, payload: VoucherUpdate, actor: CurrentUser
) -> Voucher:
    voucher = await db.get(Voucher, voucher_id)
    if voucher is None:
        raise ResourceNotFoundError("Voucher not found")

    changes: dict[str, Any] = payload.model_dump(exclude_unset=True)
    # These columns are NOT NULL; an explicit null means "leave as is".
    for required in (
        "name",
        "value",
        "min_purchase_amount",
        "max_uses_per_household",
        "valid_from",
        "is_active",
    ):
        if changes.get(required, 0) is None:
            changes.pop(required)
    if "applicable_plans" in changes and changes["applicable_plans"] is not None:
        changes["applicable_plans"] = [str(p) for p in changes["applicable_plans"]] or None

    value = changes.get("value", voucher.value)
    if voucher.type == VoucherType.PERCENTAGE.value and value > 100:
        raise ValueError("percentage value must be between 0 and 100")
    max_uses = changes.get("max_uses", voucher.max_uses)
    if max_uses is not None and max_uses < voucher.used_count:
        raise ValueError("max_uses cannot be lower than the current used_count")

    for field_name, field_value in changes.items():
        setattr(voucher, field_name, field_value)
    await db.commit()
    await db.refresh(voucher)

    audit_log(
        "voucher_updated",
        user_id=str(actor.id),
        household_id=None,
        details={"voucher_id": str(voucher.id), "fields": sorted(changes)},
    )
    return voucher


async def delete_voucher(
    db: AsyncSession, voucher_id: UUID, actor: CurrentUser
) -> str:
    """Delete an unused voucher, or deactivate one that has redemptions."""
    voucher = await db.get(Voucher, voucher_id)
    if voucher is None:
        raise ResourceNotFoundError("Voucher not found")

    usages = await db.scalar(
        select(func.count())
        .select_from(VoucherUsage)
        .where(VoucherUsage.voucher_id == voucher.id)
    )
    if usages:
        voucher.is_active = False
        action = "deactivated"
    else:
        await db.delete(voucher)
        action = "deleted"
    await db.commit()

    audit_log(
        f"voucher_{action}",
        user_id=str(actor.id),
        household_id=None,
        details={"voucher_id": str(voucher_id), "usages": int(usages or 0)},
    )
    return action

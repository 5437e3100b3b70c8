from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy import func, select, update

from app.models.household import Household
from app.models.invoice import Invoice
from app.models.payment import Payment, PaymentMethod, PaymentStatus
from app.models.subscription import BillingCycle, SubscriptionStatus
from app.models.voucher import Voucher, VoucherType, VoucherUsage
from app.modules.billing.domain.billing.settlement import (
    PaymentSettlementService,
    PendingPaymentExistsError,
    compute_expiry,
)
from app.modules.billing.domain.billing.xendit_client_impl import ChargeResult
from app.shared.core.exceptions import (
    ForbiddenError,
    PaymentGatewayError,
    PaymentStateError,
    ResourceNotFoundError,
    VoucherLimitReachedError,
    VoucherRejectedError,
)
from tests.utils import current_user_for


@pytest.fixture
def mock_gateway():
    gateway = MagicMock()
    gateway.create_charge = AsyncMock(
        return_value=ChargeResult(
            gateway_id="inv_123",
            reference="PAYMENT-ref",
            display="https://checkout.xendit.co/web/inv_123",
            metadata={"xendit_invoice_id": "inv_123"},
            instructions={"invoice_id": "inv_123"},
        )
    )
    gateway.get_invoice = AsyncMock()
    gateway.get_payment_request = AsyncMock()
    return gateway


@pytest.fixture
def service(db, mock_gateway):
    return PaymentSettlementService(db, gateway=mock_gateway)


async def _count(db, model) -> int:
    return await db.scalar(select(func.count()).select_from(model))


async def _create(service, setup, **kwargs):
    kwargs.setdefault("payment_method", PaymentMethod.INVOICE.value)
    return await service.create_payment(
        current_user_for(setup["user"]), setup["subscription"].id, **kwargs
    )


class TestComputeExpiry:
    start = datetime(2026, 1, 31, 10, 0, tzinfo=timezone.utc)

    def test_monthly_is_calendar_month_clamped(self):
        assert compute_expiry(BillingCycle.MONTHLY.value, self.start) == datetime(
            2026, 2, 28, 10, 0, tzinfo=timezone.utc
        )

    def test_yearly(self):
        assert compute_expiry(BillingCycle.YEARLY.value, self.start) == datetime(
            2027, 1, 31, 10, 0, tzinfo=timezone.utc
        )

    @pytest.mark.parametrize("cycle", [BillingCycle.LIFETIME.value, BillingCycle.FREE.value])
    def test_lifetime_and_free_never_expire(self, cycle):
        assert compute_expiry(cycle, self.start) is None

    def test_unknown_cycle_falls_back_to_monthly(self):
        assert compute_expiry(None, self.start).month == 2


@pytest.mark.asyncio
async def test_create_payment_without_voucher(db, service, mock_gateway, billing_setup):
    creation = await _create(service, billing_setup)

    payment = creation.payment
    assert creation.settled is False
    assert creation.instructions == {"invoice_id": "inv_123"}
    assert payment.original_amount == 100000
    assert payment.discount_amount == 0
    assert payment.total == 100000
    assert payment.status == PaymentStatus.PENDING.value
    assert payment.payment_gateway_id == "inv_123"
    assert payment.payment_token == "PAYMENT-ref"
    assert payment.payment_metadata["billing_cycle"] == "monthly"

    charged_payment, method, details = mock_gateway.create_charge.await_args.args
    assert charged_payment.total == 100000
    assert method == "invoice"
    assert details.item_name == "Family Plan"


@pytest.mark.asyncio
async def test_create_payment_with_percentage_voucher(db, service, mock_gateway, billing_setup, voucher_factory):
    voucher = await voucher_factory("TEST10")

    creation = await _create(service, billing_setup, voucher_code="test10")

    payment = creation.payment
    assert payment.original_amount == 100000
    assert payment.discount_amount == 10000
    assert payment.amount == 90000
    assert payment.total == 90000
    assert payment.voucher_id == voucher.id
    assert mock_gateway.create_charge.await_args.args[0].total == 90000

    await db.refresh(voucher)
    assert voucher.used_count == 1
    usage = await db.scalar(select(VoucherUsage).where(VoucherUsage.payment_id == payment.id))
    assert usage.discount_amount == 10000


@pytest.mark.asyncio
async def test_create_payment_uses_yearly_price(db, service, plan_factory, household_factory, subscription_factory):
    plan = await plan_factory(price=100000, price_yearly=1000000)
    household, user = await household_factory()
    subscription = await subscription_factory(household, plan, billing_cycle=BillingCycle.YEARLY.value)

    creation = await service.create_payment(
        current_user_for(user), subscription.id, PaymentMethod.INVOICE.value
    )
    assert creation.payment.original_amount == 1000000


@pytest.mark.asyncio
async def test_zero_total_settles_without_gateway(db, service, mock_gateway, billing_setup, voucher_factory):
    voucher = await voucher_factory("FREE100", value=100)

    creation = await _create(service, billing_setup, voucher_code="FREE100")

    payment = creation.payment
    assert creation.settled is True
    assert payment.total == 0
    assert payment.status == PaymentStatus.PAID.value
    assert payment.payment_method == PaymentMethod.VOUCHER.value
    assert payment.paid_at is not None
    mock_gateway.create_charge.assert_not_awaited()

    subscription = billing_setup["subscription"]
    await db.refresh(subscription)
    assert subscription.status == SubscriptionStatus.ACTIVE.value
    assert subscription.expires_at is not None

    household = await db.get(Household, billing_setup["household"].id)
    await db.refresh(household)
    assert household.current_subscription_id == subscription.id

    invoice = await db.scalar(select(Invoice).where(Invoice.payment_id == payment.id))
    assert invoice.total == 0
    assert [item["amount"] for item in invoice.line_items] == [100000, -100000]
    await db.refresh(voucher)
    assert voucher.used_count == 1


@pytest.mark.asyncio
async def test_fixed_voucher_larger_than_price_is_clamped(db, service, mock_gateway, billing_setup, voucher_factory):
    await voucher_factory("BIG", type=VoucherType.FIXED.value, value=200000)

    creation = await _create(service, billing_setup, voucher_code="BIG")

    assert creation.payment.discount_amount == 100000
    assert creation.payment.total == 0
    assert creation.settled is True


@pytest.mark.asyncio
async def test_rejected_voucher_writes_nothing(db, service, mock_gateway, billing_setup):
    with pytest.raises(VoucherRejectedError):
        await _create(service, billing_setup, voucher_code="MISSING")

    assert await _count(db, Payment) == 0
    mock_gateway.create_charge.assert_not_awaited()


@pytest.mark.asyncio
async def test_lost_race_rolls_back_everything(db, service, mock_gateway, billing_setup, voucher_factory):
    voucher = await voucher_factory("LAST1", max_uses=1)
    original_validate = service.vouchers.validate

    async def validate_then_lose_race(*args, **kwargs):
        result = await original_validate(*args, **kwargs)
        # Another checkout takes the last slot between validation and apply.
        await db.execute(update(Voucher).where(Voucher.id == voucher.id).values(used_count=1))
        return result

    service.vouchers.validate = validate_then_lose_race

    with pytest.raises(VoucherLimitReachedError):
        await _create(service, billing_setup, voucher_code="LAST1")

    assert await _count(db, Payment) == 0
    assert await _count(db, VoucherUsage) == 0
    mock_gateway.create_charge.assert_not_awaited()


@pytest.mark.asyncio
async def test_gateway_error_rolls_back_payment_and_voucher(db, service, mock_gateway, billing_setup, voucher_factory):
    voucher = await voucher_factory("TEST10", max_uses=10)
    mock_gateway.create_charge.side_effect = PaymentGatewayError("Payment gateway request failed")

    with pytest.raises(PaymentGatewayError):
        await _create(service, billing_setup, voucher_code="TEST10")

    await db.refresh(voucher)
    assert voucher.used_count == 0
    assert await _count(db, Payment) == 0
    assert await _count(db, VoucherUsage) == 0


@pytest.mark.asyncio
async def test_unexpected_gateway_exception_is_wrapped(db, service, mock_gateway, billing_setup):
    mock_gateway.create_charge.side_effect = RuntimeError("socket closed")

    with pytest.raises(PaymentGatewayError) as exc:
        await _create(service, billing_setup)

    assert exc.value.status_code == 502
    assert await _count(db, Payment) == 0


@pytest.mark.asyncio
async def test_pending_payment_blocks_new_one(db, service, billing_setup):
    first = await _create(service, billing_setup)

    with pytest.raises(PendingPaymentExistsError) as exc:
        await _create(service, billing_setup)

    assert exc.value.payment.id == first.payment.id
    assert exc.value.details == {"payment_id": str(first.payment.id)}


@pytest.mark.asyncio
async def test_member_cannot_create_payment(db, service, plan_factory, household_factory, subscription_factory):
    plan = await plan_factory()
    household, member = await household_factory(role="member")
    subscription = await subscription_factory(household, plan)

    with pytest.raises(ForbiddenError):
        await service.create_payment(current_user_for(member), subscription.id, "invoice")


@pytest.mark.asyncio
async def test_billing_owner_member_can_create_payment(db, service, plan_factory, household_factory, subscription_factory):
    plan = await plan_factory()
    household, member = await household_factory(role="member", is_billing_owner=True)
    subscription = await subscription_factory(household, plan)

    creation = await service.create_payment(current_user_for(member), subscription.id, "invoice")
    assert creation.payment.user_id == member.id


@pytest.mark.asyncio
async def test_other_household_subscription_is_forbidden(db, service, billing_setup, household_factory):
    _other, stranger = await household_factory()

    with pytest.raises(ForbiddenError):
        await service.create_payment(
            current_user_for(stranger), billing_setup["subscription"].id, "invoice"
        )


@pytest.mark.asyncio
async def test_success_is_idempotent(db, service, billing_setup):
    payment = (await _create(service, billing_setup)).payment

    assert await service.handle_payment_success(payment, {"id": "inv_123", "payment_channel": "BCA"}) is True
    first_paid_at = payment.paid_at
    assert await service.handle_payment_success(payment, {"id": "inv_123"}) is False

    assert payment.paid_at == first_paid_at
    assert payment.payment_metadata["paid_via"] == "BCA"
    assert await _count(db, Invoice) == 1


@pytest.mark.asyncio
async def test_success_keeps_original_gateway_id(db, service, billing_setup):
    payment = (await _create(service, billing_setup)).payment

    await service.handle_payment_success(payment, {"id": "callback_999"})
    assert payment.payment_gateway_id == "inv_123"


@pytest.mark.asyncio
async def test_failure_never_downgrades_paid(db, service, billing_setup):
    payment = (await _create(service, billing_setup)).payment
    await service.handle_payment_success(payment, {})

    assert await service.handle_payment_failed(payment, {"failure_code": "X"}) is False
    assert payment.status == PaymentStatus.PAID.value


@pytest.mark.asyncio
async def test_failure_marks_payment_and_expires_subscription(db, service, billing_setup, voucher_factory):
    voucher = await voucher_factory("TEST10")
    payment = (await _create(service, billing_setup, voucher_code="TEST10")).payment

    assert await service.handle_payment_failed(payment, {"failure_code": "INSUFFICIENT_BALANCE"}) is True
    await db.commit()

    assert payment.status == PaymentStatus.FAILED.value
    assert payment.failed_at is not None
    assert payment.payment_metadata["failure_code"] == "INSUFFICIENT_BALANCE"
    subscription = billing_setup["subscription"]
    await db.refresh(subscription)
    assert subscription.status == SubscriptionStatus.EXPIRED.value
    # Failure keeps the redemption.
    await db.refresh(voucher)
    assert voucher.used_count == 1


@pytest.mark.asyncio
async def test_expiry_reverses_voucher(db, service, billing_setup, voucher_factory):
    voucher = await voucher_factory("TEST10")
    payment = (await _create(service, billing_setup, voucher_code="TEST10")).payment

    assert await service.handle_payment_expired(payment, {"status": "EXPIRED"}) is True
    await db.commit()

    assert payment.status == PaymentStatus.EXPIRED.value
    await db.refresh(voucher)
    assert voucher.used_count == 0
    assert await _count(db, VoucherUsage) == 0

    # A second expiry is a no-op.
    assert await service.handle_payment_expired(payment, {"status": "EXPIRED"}) is False


@pytest.mark.asyncio
async def test_late_success_after_expiry_without_voucher_is_accepted(db, service, billing_setup):
    payment = (await _create(service, billing_setup)).payment
    await service.handle_payment_expired(payment, {"status": "EXPIRED"})

    assert await service.handle_payment_success(payment, {"payment_channel": "BCA"}) is True
    assert payment.status == PaymentStatus.PAID.value


@pytest.mark.asyncio
async def test_late_success_is_refused_when_voucher_slot_is_gone(db, service, billing_setup, voucher_factory):
    voucher = await voucher_factory("LAST1", max_uses=1)
    payment = (await _create(service, billing_setup, voucher_code="LAST1")).payment
    await service.handle_payment_expired(payment, {"status": "EXPIRED"})
    # Another household redeems the freed slot.
    await db.execute(update(Voucher).where(Voucher.id == voucher.id).values(used_count=1))

    assert await service.handle_payment_success(payment, {"payment_channel": "BCA"}) is False
    await db.commit()

    assert payment.status == PaymentStatus.EXPIRED.value
    assert payment.paid_at is None
    assert payment.payment_metadata["refund_required"] is True
    assert await _count(db, VoucherUsage) == 0
    assert await _count(db, Invoice) == 0
    await db.refresh(voucher)
    assert voucher.used_count == 1


@pytest.mark.asyncio
async def test_cancel_reverses_voucher(db, service, billing_setup, voucher_factory):
    voucher = await voucher_factory("TEST10")
    payment = (await _create(service, billing_setup, voucher_code="TEST10")).payment

    canceled = await service.cancel_payment(current_user_for(billing_setup["user"]), payment.id)

    assert canceled.status == PaymentStatus.EXPIRED.value
    assert canceled.payment_metadata["canceled_by"] == str(billing_setup["user"].id)
    await db.refresh(voucher)
    assert voucher.used_count == 0

    with pytest.raises(PaymentStateError):
        await service.cancel_payment(current_user_for(billing_setup["user"]), payment.id)


@pytest.mark.asyncio
async def test_get_payment_for_checks_household(db, service, billing_setup, household_factory):
    payment = (await _create(service, billing_setup)).payment
    _other, stranger = await household_factory()

    with pytest.raises(ForbiddenError):
        await service.get_payment_for(current_user_for(stranger), payment.id)

    with pytest.raises(ResourceNotFoundError):
        await service.get_payment_for(current_user_for(billing_setup["user"]), uuid4())


@pytest.mark.asyncio
async def test_sync_applies_remote_status(db, service, mock_gateway, billing_setup):
    payment = (await _create(service, billing_setup)).payment
    mock_gateway.get_invoice.return_value = {
        "id": "inv_123",
        "status": "SETTLED",
        "payment_channel": "BRI",
        "paid_amount": 100000,
    }

    synced = await service.sync_payment_status(current_user_for(billing_setup["user"]), payment.id)

    mock_gateway.get_invoice.assert_awaited_once_with("inv_123")
    assert synced.status == PaymentStatus.PAID.value
    assert synced.payment_metadata["paid_via"] == "BRI"


@pytest.mark.asyncio
async def test_sync_keeps_snapshot_when_gateway_unreachable(db, service, mock_gateway, billing_setup):
    payment = (await _create(service, billing_setup)).payment
    mock_gateway.get_invoice.side_effect = PaymentGatewayError("down")

    synced = await service.sync_payment_status(current_user_for(billing_setup["user"]), payment.id)
    assert synced.status == PaymentStatus.PENDING.value


@pytest.mark.asyncio
async def test_invoice_numbers_are_sequential_per_day(db, service, plan_factory, household_factory, subscription_factory):
    plan = await plan_factory()
    numbers = []
    for _ in range(2):
        household, user = await household_factory()
        subscription = await subscription_factory(household, plan)
        payment = (
            await service.create_payment(current_user_for(user), subscription.id, "invoice")
        ).payment
        await service.handle_payment_success(payment, {})
        await db.commit()
        invoice = await db.scalar(select(Invoice).where(Invoice.payment_id == payment.id))
        numbers.append(invoice.invoice_number)

    prefix = f"INV-{datetime.now(timezone.utc):%Y%m%d}-"
    assert numbers == [f"{prefix}0001", f"{prefix}0002"]


@pytest.mark.asyncio
async def test_list_payments_is_paginated(db, service, billing_setup):
    await _create(service, billing_setup)

    payments, total = await service.list_payments(billing_setup["household"].id, page=1, per_page=10)
    assert total == 1
    assert len(payments) == 1

    payments, total = await service.list_payments(billing_setup["household"].id, page=2, per_page=10)
    assert total == 1
    assert payments == []

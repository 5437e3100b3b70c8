import json
from datetime import timedelta
from uuid import UUID, uuid4

import pytest
import respx
from httpx import AsyncClient
from sqlalchemy import func, select, update

from app.models.household import Household
from app.models.payment import Payment, PaymentStatus
from app.models.subscription import SubscriptionStatus
from app.models.voucher import Voucher, VoucherType, VoucherUsage
from app.modules.billing.domain.billing.voucher_service import VoucherService
from tests.utils import WEBHOOK_TOKEN, XENDIT_BASE_URL, auth_headers, create_test_token

PAYMENTS_URL = "/api/v1/payments"
WEBHOOK_URL = "/api/v1/webhooks/xendit"


def _mock_invoice(invoice_id: str = "inv_abc"):
    return respx.post(f"{XENDIT_BASE_URL}/v2/invoices").respond(
        json={
            "id": invoice_id,
            "invoice_url": f"https://checkout.xendit.co/web/{invoice_id}",
            "expiry_date": "2026-10-20T10:00:00.000Z",
        }
    )


async def _pay(ac: AsyncClient, setup, **body):
    body.setdefault("payment_method", "invoice")
    return await ac.post(
        PAYMENTS_URL,
        json={"subscription_id": str(setup["subscription"].id), **body},
        headers=auth_headers(setup["user"]),
    )


@respx.mock
@pytest.mark.asyncio
async def test_checkout_with_percentage_voucher(ac: AsyncClient, db, billing_setup, voucher_factory):
    voucher = await voucher_factory("TEST10")
    route = _mock_invoice()

    response = await _pay(ac, billing_setup, voucher_code="TEST10")

    assert response.status_code == 201
    data = response.json()
    assert data["message"] == "Payment created successfully"
    assert data["payment"]["original_amount"] == 100000
    assert data["payment"]["discount_amount"] == 10000
    assert data["payment"]["total"] == 90000
    assert data["payment"]["formatted_total"] == "Rp 90.000"
    assert data["payment"]["payment_url"] == "https://checkout.xendit.co/web/inv_abc"
    assert data["payment_details"]["invoice_id"] == "inv_abc"
    assert json.loads(route.calls.last.request.content)["amount"] == 90000

    await db.refresh(voucher)
    assert voucher.used_count == 1


@respx.mock
@pytest.mark.asyncio
async def test_full_discount_settles_immediately(ac: AsyncClient, db, billing_setup, voucher_factory):
    await voucher_factory("FREE100", value=100)
    route = _mock_invoice()

    response = await _pay(ac, billing_setup, voucher_code="FREE100")

    assert response.status_code == 200
    data = response.json()
    assert data["message"] == "Payment completed with voucher"
    assert data["payment"]["status"] == "paid"
    assert data["payment"]["total"] == 0
    assert data["payment"]["payment_method"] == "voucher"
    assert not route.called

    subscription = billing_setup["subscription"]
    await db.refresh(subscription)
    assert subscription.status == SubscriptionStatus.ACTIVE.value
    household = await db.get(Household, billing_setup["household"].id)
    await db.refresh(household)
    assert household.current_subscription_id == subscription.id


@respx.mock
@pytest.mark.asyncio
async def test_fixed_voucher_above_price_is_clamped(ac: AsyncClient, billing_setup, voucher_factory):
    await voucher_factory("BIG", type=VoucherType.FIXED.value, value=200000)

    response = await _pay(ac, billing_setup, voucher_code="BIG")

    assert response.status_code == 200
    payment = response.json()["payment"]
    assert payment["discount_amount"] == 100000
    assert payment["total"] == 0


@respx.mock
@pytest.mark.asyncio
async def test_voucher_limit_across_households(
    ac: AsyncClient, db, plan_factory, household_factory, subscription_factory, voucher_factory
):
    voucher = await voucher_factory("TWICE", max_uses=2)
    _mock_invoice()
    plan = await plan_factory()

    statuses = []
    for _ in range(3):
        household, user = await household_factory()
        subscription = await subscription_factory(household, plan)
        response = await _pay(
            ac, {"subscription": subscription, "user": user}, voucher_code="TWICE"
        )
        statuses.append(response.status_code)

    assert statuses == [201, 201, 422]
    assert response.json()["error"]["details"]["reason"] == "limit_reached"
    await db.refresh(voucher)
    assert voucher.used_count == 2


@respx.mock
@pytest.mark.asyncio
async def test_lost_race_returns_conflict_and_writes_nothing(
    ac: AsyncClient, db, billing_setup, voucher_factory, monkeypatch
):
    voucher = await voucher_factory("LAST1", max_uses=1)
    route = _mock_invoice()
    original_validate = VoucherService.validate

    async def validate_then_lose_race(self, *args, **kwargs):
        result = await original_validate(self, *args, **kwargs)
        await self.db.execute(
            update(Voucher).where(Voucher.id == voucher.id).values(used_count=1)
        )
        return result

    monkeypatch.setattr(VoucherService, "validate", validate_then_lose_race)

    response = await _pay(ac, billing_setup, voucher_code="LAST1")

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "voucher_limit_reached"
    assert not route.called
    assert await db.scalar(select(func.count()).select_from(Payment)) == 0
    await db.refresh(voucher)
    assert voucher.used_count == 0


@respx.mock
@pytest.mark.asyncio
async def test_gateway_failure_returns_bad_gateway(ac: AsyncClient, db, billing_setup, voucher_factory):
    voucher = await voucher_factory("TEST10")
    respx.post(f"{XENDIT_BASE_URL}/v2/invoices").respond(status_code=500)

    response = await _pay(ac, billing_setup, voucher_code="TEST10")

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "gateway_error"
    assert await db.scalar(select(func.count()).select_from(Payment)) == 0
    assert await db.scalar(select(func.count()).select_from(VoucherUsage)) == 0
    await db.refresh(voucher)
    assert voucher.used_count == 0


@respx.mock
@pytest.mark.asyncio
async def test_existing_pending_payment_is_returned(ac: AsyncClient, billing_setup):
    _mock_invoice()
    first = await _pay(ac, billing_setup)

    second = await _pay(ac, billing_setup)

    assert second.status_code == 400
    assert second.json()["message"] == "There is already a pending payment"
    assert second.json()["payment"]["id"] == first.json()["payment"]["id"]


@pytest.mark.asyncio
async def test_rejected_voucher_returns_reason(ac: AsyncClient, db, billing_setup):
    response = await _pay(ac, billing_setup, voucher_code="NOSUCH")

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "voucher_rejected"
    assert error["details"]["reason"] == "not_found"
    assert await db.scalar(select(func.count()).select_from(Payment)) == 0


@pytest.mark.asyncio
async def test_member_cannot_pay(ac: AsyncClient, plan_factory, household_factory, subscription_factory):
    plan = await plan_factory()
    household, member = await household_factory(role="member")
    subscription = await subscription_factory(household, plan)

    response = await _pay(ac, {"subscription": subscription, "user": member})

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_virtual_account_requires_bank_code(ac: AsyncClient, billing_setup):
    response = await _pay(ac, billing_setup, payment_method="virtual_account")

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "validation_error"


@pytest.mark.asyncio
async def test_requests_without_token_are_unauthorized(ac: AsyncClient, billing_setup):
    response = await ac.post(
        PAYMENTS_URL,
        json={"subscription_id": str(billing_setup["subscription"].id), "payment_method": "invoice"},
    )
    assert response.status_code == 401


@respx.mock
@pytest.mark.asyncio
async def test_cancel_returns_voucher(ac: AsyncClient, db, billing_setup, voucher_factory):
    voucher = await voucher_factory("TEST10")
    _mock_invoice()
    payment_id = (await _pay(ac, billing_setup, voucher_code="TEST10")).json()["payment"]["id"]

    response = await ac.post(
        f"{PAYMENTS_URL}/{payment_id}/cancel", headers=auth_headers(billing_setup["user"])
    )

    assert response.status_code == 200
    assert response.json()["status"] == "expired"
    await db.refresh(voucher)
    assert voucher.used_count == 0

    again = await ac.post(
        f"{PAYMENTS_URL}/{payment_id}/cancel", headers=auth_headers(billing_setup["user"])
    )
    assert again.status_code == 400
    assert again.json()["error"]["code"] == "invalid_payment_state"


@respx.mock
@pytest.mark.asyncio
async def test_webhook_settles_payment_once(ac: AsyncClient, db, billing_setup):
    _mock_invoice("inv_hook")
    payment_id = (await _pay(ac, billing_setup)).json()["payment"]["id"]
    payload = {
        "event": "invoice.paid",
        "data": {
            "id": "inv_hook",
            "external_id": f"PAYMENT-{payment_id}",
            "status": "PAID",
            "payment_channel": "BCA",
            "paid_amount": 100000,
        },
    }

    first = await ac.post(WEBHOOK_URL, json=payload, headers={"x-callback-token": WEBHOOK_TOKEN})
    second = await ac.post(WEBHOOK_URL, json=payload, headers={"x-callback-token": WEBHOOK_TOKEN})

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json() == {"success": True}

    snapshot = await ac.get(f"{PAYMENTS_URL}/{payment_id}", headers=auth_headers(billing_setup["user"]))
    assert snapshot.json()["status"] == "paid"
    assert snapshot.json()["paid_at"] is not None
    subscription = billing_setup["subscription"]
    await db.refresh(subscription)
    assert subscription.status == SubscriptionStatus.ACTIVE.value


def _invoice_event(event: str, payment_id: str, status: str) -> dict:
    return {
        "event": event,
        "data": {
            "id": "inv_abc",
            "external_id": f"PAYMENT-{payment_id}",
            "status": status,
            "payment_channel": "BCA",
            "paid_amount": 50000,
        },
    }


@respx.mock
@pytest.mark.asyncio
async def test_late_success_after_expiry_cannot_reuse_taken_voucher_slot(
    ac: AsyncClient, db, billing_setup, household_factory, subscription_factory, voucher_factory
):
    voucher = await voucher_factory("HALF", value=50, max_uses=1)
    _mock_invoice()
    headers = {"x-callback-token": WEBHOOK_TOKEN}

    first_id = (await _pay(ac, billing_setup, voucher_code="HALF")).json()["payment"]["id"]
    expired = await ac.post(
        WEBHOOK_URL, json=_invoice_event("invoice.expired", first_id, "EXPIRED"), headers=headers
    )
    assert expired.status_code == 200

    household, user = await household_factory()
    subscription = await subscription_factory(household, billing_setup["plan"])
    second = await _pay(ac, {"subscription": subscription, "user": user}, voucher_code="HALF")
    assert second.status_code == 201
    second_id = second.json()["payment"]["id"]

    late = await ac.post(
        WEBHOOK_URL, json=_invoice_event("invoice.paid", first_id, "PAID"), headers=headers
    )

    assert late.status_code == 200
    first = await db.get(Payment, UUID(first_id))
    await db.refresh(first)
    assert first.status == PaymentStatus.EXPIRED.value
    assert first.paid_at is None
    assert first.payment_metadata["refund_required"] is True
    await db.refresh(voucher)
    assert voucher.used_count == 1
    usages = (await db.execute(select(VoucherUsage))).scalars().all()
    assert [str(u.payment_id) for u in usages] == [second_id]
    await db.refresh(billing_setup["subscription"])
    assert billing_setup["subscription"].status == SubscriptionStatus.PENDING.value


@respx.mock
@pytest.mark.asyncio
async def test_late_success_after_cancel_redeems_voucher_again(
    ac: AsyncClient, db, billing_setup, voucher_factory
):
    voucher = await voucher_factory("HALF", value=50, max_uses=1)
    _mock_invoice()
    payment_id = (await _pay(ac, billing_setup, voucher_code="HALF")).json()["payment"]["id"]
    canceled = await ac.post(
        f"{PAYMENTS_URL}/{payment_id}/cancel", headers=auth_headers(billing_setup["user"])
    )
    assert canceled.json()["status"] == "expired"
    await db.refresh(voucher)
    assert voucher.used_count == 0

    late = await ac.post(
        WEBHOOK_URL,
        json=_invoice_event("invoice.paid", payment_id, "PAID"),
        headers={"x-callback-token": WEBHOOK_TOKEN},
    )

    assert late.status_code == 200
    payment = await db.get(Payment, UUID(payment_id))
    await db.refresh(payment)
    assert payment.status == PaymentStatus.PAID.value
    await db.refresh(voucher)
    assert voucher.used_count == 1
    usage = await db.scalar(select(VoucherUsage).where(VoucherUsage.payment_id == payment.id))
    assert usage is not None
    assert usage.discount_amount == 50000


@pytest.mark.asyncio
async def test_webhook_with_numeric_reference_is_not_found(ac: AsyncClient):
    headers = {"x-callback-token": WEBHOOK_TOKEN}

    v2 = await ac.post(
        WEBHOOK_URL,
        json={"event": "invoice.paid", "data": {"external_id": 98765, "status": "PAID"}},
        headers=headers,
    )
    v1 = await ac.post(
        WEBHOOK_URL,
        json={"external_id": 12345, "status": "PAID", "payment_channel": "BCA", "paid_amount": 1000},
        headers=headers,
    )

    assert v2.status_code == 404
    assert v1.status_code == 404
    assert v1.json()["error"]["code"] == "not_found"


@pytest.mark.asyncio
async def test_webhook_error_responses(ac: AsyncClient):
    good_headers = {"x-callback-token": WEBHOOK_TOKEN}

    unauthorized = await ac.post(
        WEBHOOK_URL, json={"event": "invoice.paid", "data": {}}, headers={"x-callback-token": "wrong"}
    )
    assert unauthorized.status_code == 401

    unknown_payment = await ac.post(
        WEBHOOK_URL,
        json={"event": "invoice.paid", "data": {"external_id": f"PAYMENT-{uuid4()}", "status": "PAID"}},
        headers=good_headers,
    )
    assert unknown_payment.status_code == 404

    malformed = await ac.post(
        WEBHOOK_URL,
        content=b"{broken",
        headers={**good_headers, "Content-Type": "application/json"},
    )
    assert malformed.status_code == 400
    assert malformed.json()["error"]["code"] == "invalid_webhook_payload"

    unknown_gateway = await ac.post("/api/v1/webhooks/midtrans", json={}, headers=good_headers)
    assert unknown_gateway.status_code == 404


@respx.mock
@pytest.mark.asyncio
async def test_sync_pulls_gateway_status(ac: AsyncClient, billing_setup):
    _mock_invoice("inv_sync")
    respx.get(f"{XENDIT_BASE_URL}/v2/invoices/inv_sync").respond(
        json={"id": "inv_sync", "status": "EXPIRED"}
    )
    payment_id = (await _pay(ac, billing_setup)).json()["payment"]["id"]

    response = await ac.post(
        f"{PAYMENTS_URL}/{payment_id}/sync", headers=auth_headers(billing_setup["user"])
    )

    assert response.status_code == 200
    assert response.json()["status"] == PaymentStatus.EXPIRED.value


@respx.mock
@pytest.mark.asyncio
async def test_payment_history_is_household_scoped(ac: AsyncClient, billing_setup, household_factory):
    _mock_invoice()
    await _pay(ac, billing_setup)
    _other, stranger = await household_factory()

    own = await ac.get(PAYMENTS_URL, headers=auth_headers(billing_setup["user"]))
    theirs = await ac.get(PAYMENTS_URL, headers=auth_headers(stranger))

    assert own.json()["total"] == 1
    assert own.json()["data"][0]["subscription"]["plan_name"] == "Family"
    assert theirs.json()["total"] == 0

    payment_id = own.json()["data"][0]["id"]
    forbidden = await ac.get(f"{PAYMENTS_URL}/{payment_id}", headers=auth_headers(stranger))
    assert forbidden.status_code == 403


@pytest.mark.asyncio
async def test_expired_token_is_rejected(ac: AsyncClient, billing_setup):
    user = billing_setup["user"]
    token = create_test_token(user.id, user.email, expires_in=timedelta(minutes=-1))

    response = await ac.get(PAYMENTS_URL, headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Token has expired"

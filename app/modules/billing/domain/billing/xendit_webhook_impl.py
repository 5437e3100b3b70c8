"""Webhook handler implementation for Xendit payment callbacks."""

from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, NoReturn, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.payment import Payment
from app.shared.core.exceptions import AuthError, BillingError, ResourceNotFoundError
from app.shared.core.logging import audit_log
from app.shared.core.ops_metrics import WEBHOOK_EVENTS_TOTAL

from . import xendit_shared as shared
from .settlement import PaymentSettlementService
from .xendit_client_impl import verify_webhook_token

Handler = Callable[[dict[str, Any]], Awaitable[Optional[str]]]


class XenditWebhookHandler:
    """
    Xendit webhook handler.

    Accepts both V2 event envelopes (`{"event": ..., "data": {...}}`) and V1
    flat callbacks keyed by our reference prefixes. Every status change goes
    through `PaymentSettlementService`, so replays are no-ops.
    """

    def __init__(self, db: AsyncSession, settlement: PaymentSettlementService | None = None):
        self.db = db
        self.settlement = settlement or PaymentSettlementService(db)

    async def handle(self, token: Optional[str], payload: bytes) -> dict[str, Any]:
        """Verify and process webhook."""
        if not verify_webhook_token(token):
            WEBHOOK_EVENTS_TOTAL.labels(gateway=shared.XENDIT_GATEWAY, outcome="unauthorized").inc()
            audit_log(
                "security_event",
                user_id=None,
                household_id=None,
                details={"reason": "xendit_webhook_invalid_token"},
            )
            shared.logger.warning("xendit_webhook_invalid_token")
            raise AuthError("Invalid callback token")

        try:
            event = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError):
            self._malformed("invalid_json", payload_len=len(payload))
        if not isinstance(event, dict):
            self._malformed("not_an_object")

        handler, data, kind = self._route(event)
        if handler is None:
            self._malformed("unrecognized_payload", kind=kind)

        shared.logger.info(
            "xendit_webhook_received",
            kind=kind,
            data_id=data.get("id"),
            status=data.get("status"),
        )

        try:
            outcome = await handler(data)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        WEBHOOK_EVENTS_TOTAL.labels(
            gateway=shared.XENDIT_GATEWAY, outcome=outcome or "no_action"
        ).inc()
        return {"success": True}

    def _malformed(self, reason: str, **context: Any) -> NoReturn:
        WEBHOOK_EVENTS_TOTAL.labels(gateway=shared.XENDIT_GATEWAY, outcome="malformed").inc()
        shared.logger.warning("xendit_webhook_malformed", reason=reason, **context)
        raise BillingError("Malformed webhook payload", code="invalid_webhook_payload")

    def _route(self, event: dict[str, Any]) -> tuple[Optional[Handler], dict[str, Any], str]:
        if "event" in event and isinstance(event.get("data"), dict):
            name = str(event["event"])
            data = event["data"]
            prefixes: list[tuple[tuple[str, ...], Handler]] = [
                (("invoice.",), self._handle_invoice),
                (("ewallet.",), self._handle_ewallet),
                (("qr.",), self._handle_qris),
                (("fva.", "virtual_account."), self._handle_virtual_account),
                (("payment.",), self._handle_payment_request),
            ]
            for starts, handler in prefixes:
                if name.startswith(starts):
                    return handler, data, name
            return None, data, name

        external_id = str(event.get("external_id") or "")
        reference_id = str(event.get("reference_id") or "")
        if external_id.startswith(shared.REFERENCE_PREFIXES["invoice"]):
            return self._handle_invoice, event, "v1_invoice"
        if external_id.startswith(shared.REFERENCE_PREFIXES["virtual_account"]):
            return self._handle_virtual_account, event, "v1_virtual_account"
        if reference_id.startswith(shared.REFERENCE_PREFIXES["ewallet"]):
            return self._handle_ewallet, event, "v1_ewallet"
        if reference_id.startswith(shared.REFERENCE_PREFIXES["qris"]):
            return self._handle_qris, event, "v1_qris"
        # Xendit dashboard test callbacks carry none of our references.
        if "callback_virtual_account_id" in event:
            return self._handle_virtual_account, event, "v1_virtual_account"
        if "payment_channel" in event and "paid_amount" in event:
            return self._handle_invoice, event, "v1_invoice"
        return None, event, "v1_unknown"

    async def find_payment(self, data: dict[str, Any]) -> Optional[Payment]:
        """Resolve the payment a callback refers to."""
        for key in ("reference_id", "external_id"):
            reference = data.get(key)
            if reference:
                payment = await self.db.scalar(
                    select(Payment).where(Payment.payment_token == str(reference))
                )
                if payment is not None:
                    return payment

        gateway_id = data.get("id")
        if gateway_id:
            payment = await self.db.scalar(
                select(Payment).where(Payment.payment_gateway_id == str(gateway_id))
            )
            if payment is not None:
                return payment

        for key in ("external_id", "reference_id"):
            raw = data.get(key)
            payment_id = shared.extract_payment_id(str(raw)) if raw else None
            if payment_id is not None:
                payment = await self.db.get(Payment, payment_id)
                if payment is not None:
                    return payment

        nested = data.get("data")
        if isinstance(nested, dict):
            return await self.find_payment(nested)
        return None

    async def _require_payment(self, data: dict[str, Any]) -> Payment:
        payment = await self.find_payment(data)
        if payment is None:
            shared.logger.warning(
                "xendit_webhook_payment_not_found",
                reference_id=data.get("reference_id"),
                external_id=data.get("external_id"),
                gateway_id=data.get("id"),
            )
            WEBHOOK_EVENTS_TOTAL.labels(gateway=shared.XENDIT_GATEWAY, outcome="not_found").inc()
            raise ResourceNotFoundError("Payment not found")
        return payment

    async def _handle_invoice(self, data: dict[str, Any]) -> Optional[str]:
        payment = await self._require_payment(data)
        status = str(data.get("status") or "").upper()
        return await self.settlement.apply_gateway_status(
            payment,
            status,
            {
                "id": data.get("id"),
                "payment_channel": data.get("payment_channel") or data.get("payment_method"),
                "paid_amount": data.get("paid_amount", payment.total),
                "xendit_fee": data.get("fees_paid_amount", 0),
                "payment_id": data.get("payment_id"),
                "failure_code": data.get("failure_code"),
                "status": status,
                "updated": data.get("updated"),
            },
        )

    async def _handle_virtual_account(self, data: dict[str, Any]) -> Optional[str]:
        payment = await self._require_payment(data)
        if "callback_virtual_account_id" not in data and "amount" not in data:
            shared.logger.info("xendit_va_event_no_action", payment_id=str(payment.id))
            return None

        await self.settlement.handle_payment_success(
            payment,
            {
                "id": data.get("id"),
                "payment_channel": "VIRTUAL_ACCOUNT",
                "paid_amount": data.get("amount", payment.total),
                "payment_id": data.get("payment_id"),
                "bank_code": data.get("bank_code"),
            },
        )
        return "paid" if payment.is_paid else "refund_required"

    async def _handle_ewallet(self, data: dict[str, Any]) -> Optional[str]:
        payment = await self._require_payment(data)
        status = str(data.get("status") or "").upper()
        if status in {"SUCCEEDED", "PAID", "CAPTURED"}:
            await self.settlement.handle_payment_success(
                payment,
                {
                    "id": data.get("id"),
                    "payment_channel": "EWALLET",
                    "paid_amount": data.get("charge_amount")
                    or data.get("capture_amount")
                    or payment.total,
                    "ewallet_type": data.get("channel_code"),
                },
            )
            return "paid" if payment.is_paid else "refund_required"
        if status == "FAILED":
            await self.settlement.handle_payment_failed(
                payment, {"failure_code": data.get("failure_code")}
            )
            return "failed"
        if status == "VOIDED":
            await self.settlement.handle_payment_expired(payment, {"status": status})
            return "expired"
        shared.logger.info("xendit_ewallet_status_no_action", payment_id=str(payment.id), status=status)
        return None

    async def _handle_qris(self, data: dict[str, Any]) -> Optional[str]:
        payment = await self._require_payment(data)
        status = str(data.get("status") or "").upper()
        if status in {"SUCCEEDED", "COMPLETED", "PAID"}:
            await self.settlement.handle_payment_success(
                payment,
                {
                    "id": data.get("id"),
                    "payment_channel": "QRIS",
                    "paid_amount": data.get("amount", payment.total),
                },
            )
            return "paid" if payment.is_paid else "refund_required"
        if status == "FAILED":
            await self.settlement.handle_payment_failed(
                payment, {"failure_code": data.get("failure_code")}
            )
            return "failed"
        if status in {"EXPIRED", "INACTIVE"}:
            await self.settlement.handle_payment_expired(payment, {"status": status})
            return "expired"
        shared.logger.info("xendit_qris_status_no_action", payment_id=str(payment.id), status=status)
        return None

    async def _handle_payment_request(self, data: dict[str, Any]) -> Optional[str]:
        payment = await self._require_payment(data)
        status = str(data.get("status") or "").upper()
        method = data.get("payment_method") or {}
        return await self.settlement.apply_gateway_status(
            payment,
            status,
            {
                "id": data.get("id"),
                "payment_channel": method.get("type") if isinstance(method, dict) else None,
                "paid_amount": data.get("amount", payment.total),
                "failure_code": data.get("failure_code"),
                "status": status,
                "updated": data.get("updated"),
            },
        )

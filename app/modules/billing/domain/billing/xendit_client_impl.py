"""Xendit API client implementation."""

from __future__ import annotations

import hmac
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

import httpx

from app.models.payment import Payment, PaymentMethod
from app.shared.core.exceptions import PaymentGatewayError
from app.shared.core.http import get_http_client
from app.shared.core.ops_metrics import GATEWAY_REQUEST_DURATION
from app.shared.core.retry import tenacity_retry

from . import xendit_shared as shared


@dataclass
class ChargeDetails:
    """Method-specific inputs and display data for a charge."""

    item_name: str
    customer_name: str
    customer_email: Optional[str] = None
    bank_code: Optional[str] = None
    ewallet_type: Optional[str] = None


@dataclass
class ChargeResult:
    gateway_id: str
    reference: str
    display: Optional[str] = None  # checkout URL or QR string
    expires_at: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    instructions: dict[str, Any] = field(default_factory=dict)


def verify_webhook_token(token: Optional[str]) -> bool:
    """Constant-time comparison against the configured callback token."""
    expected = shared.settings.XENDIT_WEBHOOK_TOKEN
    if not expected:
        shared.logger.warning("xendit_webhook_token_not_configured")
        return False
    if not token:
        return False
    return hmac.compare_digest(expected.encode(), token.encode())


class XenditClient:
    """Async wrapper for Xendit operations."""

    def __init__(self) -> None:
        if not shared.settings.XENDIT_SECRET_KEY:
            raise PaymentGatewayError(
                "Payment gateway not configured", code="gateway_not_configured"
            )
        self.base_url = shared.settings.XENDIT_BASE_URL.rstrip("/")
        self.auth = httpx.BasicAuth(shared.settings.XENDIT_SECRET_KEY, "")
        self.timeout = float(shared.settings.XENDIT_TIMEOUT_SECONDS)

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: dict[str, Any] | None = None,
        operation: str = "request",
    ) -> dict[str, Any]:
        client = get_http_client()
        started = time.perf_counter()
        try:
            response = await client.request(
                method,
                f"{self.base_url}/{endpoint.lstrip('/')}",
                auth=self.auth,
                json=data,
                timeout=self.timeout,
            )
            response.raise_for_status()
            try:
                payload = response.json()
            except ValueError as exc:
                raise PaymentGatewayError(
                    "Invalid Xendit response body", details={"endpoint": endpoint}
                ) from exc
            if not isinstance(payload, dict):
                raise PaymentGatewayError(
                    "Invalid Xendit response payload type",
                    details={"endpoint": endpoint},
                )
            return payload
        except httpx.HTTPError as exc:
            status_code = (
                exc.response.status_code
                if isinstance(exc, httpx.HTTPStatusError)
                else None
            )
            shared.logger.error(
                "xendit_api_error",
                endpoint=endpoint,
                operation=operation,
                status_code=status_code,
                error=str(exc),
            )
            raise PaymentGatewayError(
                "Payment gateway request failed",
                details={"operation": operation, "status_code": status_code},
            ) from exc
        finally:
            GATEWAY_REQUEST_DURATION.labels(operation=operation).observe(
                time.perf_counter() - started
            )

    async def create_charge(
        self, payment: Payment, method: str, details: ChargeDetails
    ) -> ChargeResult:
        """Create the gateway-side charge for `payment.total` using `method`."""
        if method == PaymentMethod.INVOICE.value:
            return await self.create_invoice(payment, details)
        if method == PaymentMethod.VIRTUAL_ACCOUNT.value:
            return await self.create_virtual_account(payment, details)
        if method == PaymentMethod.EWALLET.value:
            return await self.create_ewallet_charge(payment, details)
        if method == PaymentMethod.QRIS.value:
            return await self.create_qris(payment)
        raise ValueError(f"Unsupported payment method: {method}")

    async def create_invoice(
        self, payment: Payment, details: ChargeDetails
    ) -> ChargeResult:
        """Create a hosted payment link."""
        reference = shared.build_reference(PaymentMethod.INVOICE.value, payment.id)
        data: dict[str, Any] = {
            "external_id": reference,
            "amount": payment.total,
            "description": f"Subscription to {details.item_name}",
            "invoice_duration": shared.settings.XENDIT_INVOICE_DURATION_SECONDS,
            "customer": {
                "given_names": details.customer_name,
                "email": details.customer_email,
            },
            "customer_notification_preference": {
                "invoice_created": ["email"],
                "invoice_reminder": ["email"],
                "invoice_paid": ["email"],
            },
            "success_redirect_url": shared.settings.success_redirect_url,
            "failure_redirect_url": shared.settings.failure_redirect_url,
            "currency": payment.currency,
            "items": [
                {
                    "name": details.item_name,
                    "quantity": 1,
                    "price": payment.amount,
                    "category": "Subscription",
                }
            ],
        }
        if payment.tax > 0:
            data["fees"] = [{"type": "Tax", "value": payment.tax}]

        result = await self._request("POST", "v2/invoices", data, "create_invoice")
        invoice_url = result.get("invoice_url")
        return ChargeResult(
            gateway_id=str(result["id"]),
            reference=reference,
            display=invoice_url,
            expires_at=result.get("expiry_date"),
            metadata={
                "xendit_invoice_id": result["id"],
                "invoice_url": invoice_url,
                "expiry_date": result.get("expiry_date"),
            },
            instructions={
                "invoice_id": result["id"],
                "invoice_url": invoice_url,
                "expiry_date": result.get("expiry_date"),
            },
        )

    async def _create_payment_request(
        self,
        payment: Payment,
        reference: str,
        payment_method: dict[str, Any],
        operation: str,
    ) -> dict[str, Any]:
        data = {
            "reference_id": reference,
            "amount": payment.total,
            "currency": payment.currency,
            "payment_method": {"reusability": "ONE_TIME_USE", **payment_method},
        }
        return await self._request("POST", "payment_requests", data, operation)

    async def create_virtual_account(
        self, payment: Payment, details: ChargeDetails
    ) -> ChargeResult:
        bank_code = (details.bank_code or "").upper()
        if bank_code not in shared.VIRTUAL_ACCOUNT_BANKS:
            raise ValueError(
                "Invalid bank code. Must be one of: "
                + ", ".join(shared.VIRTUAL_ACCOUNT_BANKS)
            )

        reference = shared.build_reference(
            PaymentMethod.VIRTUAL_ACCOUNT.value, payment.id
        )
        expires_at = shared.utcnow() + timedelta(
            hours=shared.settings.XENDIT_VA_EXPIRY_HOURS
        )
        result = await self._create_payment_request(
            payment,
            reference,
            {
                "type": "VIRTUAL_ACCOUNT",
                "virtual_account": {
                    "channel_code": bank_code,
                    "channel_properties": {
                        "customer_name": details.customer_name,
                        "expires_at": expires_at.isoformat(),
                    },
                },
            },
            "create_virtual_account",
        )

        props = (
            (result.get("payment_method") or {})
            .get("virtual_account", {})
            .get("channel_properties", {})
        )
        va_number = props.get("virtual_account_number")
        expiry = props.get("expires_at")
        return ChargeResult(
            gateway_id=str(result["id"]),
            reference=reference,
            display=va_number,
            expires_at=expiry,
            metadata={
                "va_number": va_number,
                "bank_code": bank_code,
                "va_id": result["id"],
                "expected_amount": payment.total,
            },
            instructions={
                "va_id": result["id"],
                "va_number": va_number,
                "bank_code": bank_code,
                "expected_amount": payment.total,
                "expiration_date": expiry,
            },
        )

    async def create_ewallet_charge(
        self, payment: Payment, details: ChargeDetails
    ) -> ChargeResult:
        ewallet_type = (details.ewallet_type or "").upper()
        if ewallet_type not in shared.EWALLET_TYPES:
            raise ValueError(
                "Invalid e-wallet type. Must be one of: "
                + ", ".join(shared.EWALLET_TYPES)
            )

        reference = shared.build_reference(PaymentMethod.EWALLET.value, payment.id)
        result = await self._create_payment_request(
            payment,
            reference,
            {
                "type": "EWALLET",
                "ewallet": {
                    "channel_code": ewallet_type,
                    "channel_properties": {
                        "success_return_url": shared.settings.success_redirect_url,
                        "failure_return_url": shared.settings.failure_redirect_url,
                    },
                },
            },
            "create_ewallet_charge",
        )

        checkout_url = None
        for action in result.get("actions") or []:
            if action.get("action") == "AUTH":
                checkout_url = action.get("url")
                break

        return ChargeResult(
            gateway_id=str(result["id"]),
            reference=reference,
            display=checkout_url,
            metadata={"ewallet_type": ewallet_type, "checkout_url": checkout_url},
            instructions={"charge_id": result["id"], "checkout_url": checkout_url},
        )

    async def create_qris(self, payment: Payment) -> ChargeResult:
        reference = shared.build_reference(PaymentMethod.QRIS.value, payment.id)
        result = await self._create_payment_request(
            payment,
            reference,
            {"type": "QR_CODE", "qr_code": {"channel_code": "QRIS"}},
            "create_qris",
        )

        qr_string = (
            (result.get("payment_method") or {})
            .get("qr_code", {})
            .get("channel_properties", {})
            .get("qr_string")
        )
        return ChargeResult(
            gateway_id=str(result["id"]),
            reference=reference,
            display=qr_string,
            metadata={"qris_id": result["id"], "qr_string": qr_string},
            instructions={"qris_id": result["id"], "qr_string": qr_string},
        )

    @tenacity_retry("external_api")
    async def get_invoice(self, invoice_id: str) -> dict[str, Any]:
        """Fetch invoice status. Safe to retry."""
        return await self._request("GET", f"v2/invoices/{invoice_id}", None, "get_invoice")

    @tenacity_retry("external_api")
    async def get_payment_request(self, payment_request_id: str) -> dict[str, Any]:
        """Fetch payment request status. Safe to retry."""
        return await self._request(
            "GET", f"payment_requests/{payment_request_id}", None, "get_payment_request"
        )

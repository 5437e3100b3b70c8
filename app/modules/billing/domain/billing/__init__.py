"""Billing Services."""

from app.modules.billing.domain.billing.settlement import (
    PaymentCreation,
    PaymentSettlementService,
    PendingPaymentExistsError,
)
from app.modules.billing.domain.billing.voucher_service import (
    RejectionReason,
    VoucherService,
    calculate_discount,
)
from app.modules.billing.domain.billing.xendit_client_impl import XenditClient
from app.modules.billing.domain.billing.xendit_webhook_impl import XenditWebhookHandler

__all__ = [
    "PaymentCreation",
    "PaymentSettlementService",
    "PendingPaymentExistsError",
    "RejectionReason",
    "VoucherService",
    "XenditClient",
    "XenditWebhookHandler",
    "calculate_discount",
]

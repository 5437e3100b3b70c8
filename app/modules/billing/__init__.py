from app.modules.billing.domain.billing import (
    PaymentSettlementService,
    VoucherService,
    XenditClient,
    XenditWebhookHandler,
)

__all__ = [
    "PaymentSettlementService",
    "VoucherService",
    "XenditClient",
    "XenditWebhookHandler",
]

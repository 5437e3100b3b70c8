"""
Operational Metrics for Dompet billing

Prometheus counters and histograms for API health, payment settlement
outcomes and voucher redemption activity.
"""

from prometheus_client import Counter, Histogram

# --- API Metrics ---
API_REQUESTS_TOTAL = Counter(
    "dompet_ops_api_requests_total",
    "Total number of API requests",
    ["method", "endpoint", "status_code"],
)

API_REQUEST_DURATION = Histogram(
    "dompet_ops_api_request_duration_seconds",
    "Duration of API requests",
    ["method", "endpoint"],
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30),
)

API_ERRORS_TOTAL = Counter(
    "dompet_ops_api_errors_total",
    "Total number of API errors by status code and path",
    ["path", "method", "status_code"],
)

# --- Billing Metrics ---
PAYMENTS_CREATED_TOTAL = Counter(
    "dompet_billing_payments_created_total",
    "Payments created by method and settlement path",
    ["payment_method", "path"],  # path: gateway | zero_total
)

PAYMENT_SETTLEMENTS_TOTAL = Counter(
    "dompet_billing_payment_settlements_total",
    "Payment state transitions by outcome",
    ["outcome"],  # paid, failed, expired, canceled, duplicate
)

VOUCHER_REDEMPTIONS_TOTAL = Counter(
    "dompet_billing_voucher_redemptions_total",
    "Voucher ledger operations",
    ["action"],  # applied, reversed, race_lost
)

VOUCHER_VALIDATIONS_TOTAL = Counter(
    "dompet_billing_voucher_validations_total",
    "Voucher validation results by reason",
    ["result"],
)

WEBHOOK_EVENTS_TOTAL = Counter(
    "dompet_billing_webhook_events_total",
    "Gateway webhook deliveries by outcome",
    ["gateway", "outcome"],
)

GATEWAY_REQUEST_DURATION = Histogram(
    "dompet_billing_gateway_request_duration_seconds",
    "Latency of outbound payment gateway calls",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)

# --- Retry & Resilience Metrics ---
OPERATION_RETRIES_TOTAL = Counter(
    "dompet_ops_operation_retries_total",
    "Total number of operation retries",
    ["operation_type", "attempt"],
)


def record_retry_metrics(operation_type: str, attempt: int) -> None:
    """Record retry metrics."""
    OPERATION_RETRIES_TOTAL.labels(
        operation_type=operation_type, attempt=str(attempt)
    ).inc()

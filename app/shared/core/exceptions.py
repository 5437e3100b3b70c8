from typing import Optional, Dict, Any


class DompetException(Exception):
    """Base exception for all Dompet errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class AuthError(DompetException):
    """Raised when authentication fails."""
    def __init__(self, message: str, code: str = "auth_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=401, details=details)


class ForbiddenError(DompetException):
    """Raised when an authenticated user may not act on a resource."""
    def __init__(self, message: str, code: str = "forbidden", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=403, details=details)


class ResourceNotFoundError(DompetException):
    """Raised when a requested resource is not found."""
    def __init__(self, message: str, code: str = "not_found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=404, details=details)


class BillingError(DompetException):
    """Raised when payment or subscription processing fails."""
    def __init__(self, message: str, code: str = "billing_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=400, details=details)


class PaymentStateError(BillingError):
    """Raised when a payment is not in a state that allows the requested transition."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="invalid_payment_state", details=details)


class VoucherRejectedError(DompetException):
    """Raised when a voucher fails validation. Always raised before any mutation."""
    def __init__(self, message: str, reason: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            code="voucher_rejected",
            status_code=422,
            details={"reason": reason, **(details or {})},
        )
        self.reason = reason


class VoucherLimitReachedError(DompetException):
    """Raised when the authoritative usage check loses a race for the last voucher slot."""
    def __init__(self, message: str = "Voucher usage limit reached", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="voucher_limit_reached", status_code=409, details=details)
        self.reason = "limit_reached"


class PaymentGatewayError(DompetException):
    """Raised when the external payment gateway fails."""
    def __init__(self, message: str, code: str = "gateway_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=502, details=details)

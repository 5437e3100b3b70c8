from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from app.models.payment import PaymentMethod
from app.models.subscription import BillingCycle
from app.models.voucher import VoucherType
from app.modules.billing.domain.billing.xendit_shared import (
    EWALLET_TYPES,
    VIRTUAL_ACCOUNT_BANKS,
)

# Methods a client may choose; "voucher" is assigned by the server only.
CLIENT_PAYMENT_METHODS = (
    PaymentMethod.INVOICE.value,
    PaymentMethod.VIRTUAL_ACCOUNT.value,
    PaymentMethod.EWALLET.value,
    PaymentMethod.QRIS.value,
)


class VoucherValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    plan_id: UUID
    billing_cycle: Optional[str] = None

    @field_validator("billing_cycle")
    @classmethod
    def _check_cycle(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip().lower()
        if value not in {BillingCycle.MONTHLY.value, BillingCycle.YEARLY.value}:
            raise ValueError("billing_cycle must be 'monthly' or 'yearly'")
        return value


class VoucherSummary(BaseModel):
    code: str
    name: str
    type: str
    value: int


class VoucherValidateResponse(BaseModel):
    valid: bool = True
    voucher: VoucherSummary
    billing_cycle: str
    base_amount: int
    discount_amount: int
    final_amount: int


class PublicVoucher(BaseModel):
    code: str
    name: str
    description: Optional[str] = None
    type: str
    value: int
    max_discount_amount: Optional[int] = None
    min_purchase_amount: int = 0
    valid_until: Optional[datetime] = None
    remaining_uses: Optional[int] = None


class PaymentCreateRequest(BaseModel):
    subscription_id: UUID
    payment_method: str
    bank_code: Optional[str] = None
    ewallet_type: Optional[str] = None
    voucher_code: Optional[str] = Field(default=None, max_length=50)

    @field_validator("payment_method")
    @classmethod
    def _check_method(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in CLIENT_PAYMENT_METHODS:
            raise ValueError(
                "payment_method must be one of: " + ", ".join(CLIENT_PAYMENT_METHODS)
            )
        return value

    @field_validator("voucher_code")
    @classmethod
    def _blank_code_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return value.strip()

    @model_validator(mode="after")
    def _check_method_details(self) -> "PaymentCreateRequest":
        if self.payment_method == PaymentMethod.VIRTUAL_ACCOUNT.value:
            if not self.bank_code or self.bank_code.upper() not in VIRTUAL_ACCOUNT_BANKS:
                raise ValueError(
                    "bank_code is required for virtual_account and must be one of: "
                    + ", ".join(VIRTUAL_ACCOUNT_BANKS)
                )
            self.bank_code = self.bank_code.upper()
        if self.payment_method == PaymentMethod.EWALLET.value:
            if not self.ewallet_type or self.ewallet_type.upper() not in EWALLET_TYPES:
                raise ValueError(
                    "ewallet_type is required for ewallet and must be one of: "
                    + ", ".join(EWALLET_TYPES)
                )
            self.ewallet_type = self.ewallet_type.upper()
        return self


class PaymentSubscriptionSummary(BaseModel):
    id: UUID
    plan_name: Optional[str] = None


class PaymentResponse(BaseModel):
    id: UUID
    original_amount: int
    discount_amount: int
    amount: int
    tax: int
    total: int
    formatted_total: str
    currency: str
    status: str
    payment_method: str
    voucher_id: Optional[UUID] = None
    payment_url: Optional[str] = None
    va_number: Optional[str] = None
    bank_code: Optional[str] = None
    created_at: datetime
    paid_at: Optional[datetime] = None
    subscription: Optional[PaymentSubscriptionSummary] = None


class PaymentCreateResponse(BaseModel):
    message: str
    payment: PaymentResponse
    payment_details: Dict[str, Any] = Field(default_factory=dict)


class PaymentListResponse(BaseModel):
    data: List[PaymentResponse]
    page: int
    per_page: int
    total: int


class PlanResponse(BaseModel):
    id: UUID
    name: str
    slug: str
    type: str
    price: int
    discount_price: Optional[int] = None
    effective_price: int
    price_yearly: Optional[int] = None
    discount_price_yearly: Optional[int] = None
    effective_yearly_price: Optional[int] = None
    currency: str
    description: Optional[str] = None
    is_popular: bool = False
    features: Dict[str, Any]


class VoucherCreate(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    type: VoucherType
    value: int = Field(ge=0)
    max_discount_amount: Optional[int] = Field(default=None, ge=0)
    min_purchase_amount: int = Field(default=0, ge=0)
    max_uses: Optional[int] = Field(default=None, ge=1)
    max_uses_per_household: int = Field(default=1, ge=1)
    applicable_plans: Optional[List[UUID]] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, value: str) -> str:
        return value.strip().upper()

    @model_validator(mode="after")
    def _check_value_and_window(self) -> "VoucherCreate":
        if self.type == VoucherType.PERCENTAGE and self.value > 100:
            raise ValueError("percentage value must be between 0 and 100")
        if (
            self.valid_from is not None
            and self.valid_until is not None
            and self.valid_until <= self.valid_from
        ):
            raise ValueError("valid_until must be after valid_from")
        return self


class VoucherUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    value: Optional[int] = Field(default=None, ge=0)
    max_discount_amount: Optional[int] = Field(default=None, ge=0)
    min_purchase_amount: Optional[int] = Field(default=None, ge=0)
    max_uses: Optional[int] = Field(default=None, ge=1)
    max_uses_per_household: Optional[int] = Field(default=None, ge=1)
    applicable_plans: Optional[List[UUID]] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: Optional[bool] = None


class AdminVoucherResponse(BaseModel):
    id: UUID
    code: str
    name: str
    description: Optional[str] = None
    type: str
    value: int
    max_discount_amount: Optional[int] = None
    min_purchase_amount: int
    max_uses: Optional[int] = None
    max_uses_per_household: int
    used_count: int
    applicable_plans: Optional[List[str]] = None
    valid_from: datetime
    valid_until: Optional[datetime] = None
    is_active: bool
    created_at: datetime


class InvoiceSubscriptionSummary(BaseModel):
    id: UUID
    plan_name: Optional[str] = None


class InvoiceResponse(BaseModel):
    id: UUID
    invoice_number: str
    payment_id: Optional[UUID] = None
    amount: int
    tax: int
    total: int
    formatted_total: str
    currency: str
    status: str
    description: Optional[str] = None
    line_items: List[Dict[str, Any]] = Field(default_factory=list)
    issued_at: Optional[datetime] = None
    due_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    subscription: Optional[InvoiceSubscriptionSummary] = None
    created_at: datetime


class InvoiceListResponse(BaseModel):
    data: List[InvoiceResponse]
    page: int
    per_page: int
    total: int

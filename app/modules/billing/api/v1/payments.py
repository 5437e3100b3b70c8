"""
Payment API Endpoints - Xendit Integration

Provides:
- POST /payments - Create a payment (optionally with a voucher)
- GET /payments - Household payment history
- GET /payments/{id} - Payment snapshot
- POST /payments/{id}/cancel - Cancel a pending payment
- POST /payments/{id}/sync - Refresh a pending payment from the gateway
"""

from typing import Annotated, Any, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.api.v1.billing_models import (
    PaymentCreateRequest,
    PaymentCreateResponse,
    PaymentListResponse,
    PaymentResponse,
)
from app.modules.billing.api.v1.billing_ops import serialize_payment
from app.modules.billing.domain.billing.settlement import (
    PaymentSettlementService,
    PendingPaymentExistsError,
)
from app.modules.billing.domain.billing.xendit_client_impl import XenditClient
from app.shared.core.auth import CurrentUser, require_household_access
from app.shared.core.rate_limit import auth_limit, standard_limit
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(prefix="/payments", tags=["Payments"])


def get_payment_gateway() -> Optional[XenditClient]:
    """Gateway override hook; None lets the service build a client on first use."""
    return None


def get_settlement_service(
    db: AsyncSession = Depends(get_db),
    gateway: Optional[XenditClient] = Depends(get_payment_gateway),
) -> PaymentSettlementService:
    return PaymentSettlementService(db, gateway=gateway)


@router.post(
    "",
    response_model=PaymentCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
@auth_limit
async def create_payment(
    request: Request,
    response: Response,
    body: PaymentCreateRequest,
    user: Annotated[CurrentUser, Depends(require_household_access)],
    service: PaymentSettlementService = Depends(get_settlement_service),
) -> Any:
    try:
        result = await service.create_payment(
            user,
            body.subscription_id,
            body.payment_method,
            bank_code=body.bank_code,
            ewallet_type=body.ewallet_type,
            voucher_code=body.voucher_code,
        )
    except PendingPaymentExistsError as exc:
        existing = await serialize_payment(service.db, exc.payment)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "message": exc.message,
                "payment": existing.model_dump(mode="json"),
            },
        )

    payment = await serialize_payment(service.db, result.payment)
    if result.settled:
        response.status_code = status.HTTP_200_OK
        return PaymentCreateResponse(
            message="Payment completed with voucher", payment=payment
        )
    return PaymentCreateResponse(
        message="Payment created successfully",
        payment=payment,
        payment_details=result.instructions,
    )


@router.get("", response_model=PaymentListResponse)
@standard_limit
async def list_payments(
    request: Request,
    user: Annotated[CurrentUser, Depends(require_household_access)],
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    service: PaymentSettlementService = Depends(get_settlement_service),
) -> PaymentListResponse:
    payments, total = await service.list_payments(user.household_id, page, per_page)
    return PaymentListResponse(
        data=[await serialize_payment(service.db, p) for p in payments],
        page=page,
        per_page=per_page,
        total=total,
    )


@router.get("/{payment_id}", response_model=PaymentResponse)
@standard_limit
async def get_payment(
    request: Request,
    payment_id: UUID,
    user: Annotated[CurrentUser, Depends(require_household_access)],
    service: PaymentSettlementService = Depends(get_settlement_service),
) -> PaymentResponse:
    payment = await service.get_payment_for(user, payment_id)
    return await serialize_payment(service.db, payment)


@router.post("/{payment_id}/cancel", response_model=PaymentResponse)
@auth_limit
async def cancel_payment(
    request: Request,
    payment_id: UUID,
    user: Annotated[CurrentUser, Depends(require_household_access)],
    service: PaymentSettlementService = Depends(get_settlement_service),
) -> PaymentResponse:
    payment = await service.cancel_payment(user, payment_id)
    return await serialize_payment(service.db, payment)


@router.post("/{payment_id}/sync", response_model=PaymentResponse)
@auth_limit
async def sync_payment(
    request: Request,
    payment_id: UUID,
    user: Annotated[CurrentUser, Depends(require_household_access)],
    service: PaymentSettlementService = Depends(get_settlement_service),
) -> PaymentResponse:
    payment = await service.sync_payment_status(user, payment_id)
    return await serialize_payment(service.db, payment)

"""
Voucher API Endpoints

Provides:
- GET /vouchers - Active vouchers for the checkout page
- POST /vouchers/validate - Preview a code against a plan before paying
"""

from typing import Annotated, Any, List, Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import BillingCycle
from app.modules.billing.api.v1.billing_models import (
    PublicVoucher,
    VoucherSummary,
    VoucherValidateRequest,
    VoucherValidateResponse,
)
from app.modules.billing.api.v1.billing_ops import (
    load_active_plan,
    serialize_public_voucher,
)
from app.modules.billing.domain.billing.voucher_service import (
    VoucherService,
    calculate_discount,
)
from app.shared.core.auth import CurrentUser, require_household_access
from app.shared.core.exceptions import VoucherRejectedError
from app.shared.core.rate_limit import standard_limit, voucher_limit
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(prefix="/vouchers", tags=["Vouchers"])


@router.get("", response_model=List[PublicVoucher])
@standard_limit
async def list_vouchers(
    request: Request,
    user: Annotated[CurrentUser, Depends(require_household_access)],
    search: Optional[str] = Query(default=None, max_length=50),
    db: AsyncSession = Depends(get_db),
) -> List[PublicVoucher]:
    vouchers = await VoucherService(db).list_available(search)
    return [serialize_public_voucher(v) for v in vouchers]


@router.post("/validate", response_model=VoucherValidateResponse)
@voucher_limit
async def validate_voucher(
    request: Request,
    body: VoucherValidateRequest,
    user: Annotated[CurrentUser, Depends(require_household_access)],
    db: AsyncSession = Depends(get_db),
) -> Any:
    """
    Check a voucher code for a plan and return the discount it would give.

    Read-only: no usage is recorded until a payment is created.
    """
    plan = await load_active_plan(db, body.plan_id)
    billing_cycle = body.billing_cycle or BillingCycle.MONTHLY.value
    base_amount = plan.price_for_cycle(billing_cycle)

    try:
        voucher = await VoucherService(db).validate(
            body.code, user.household_id, plan.id, base_amount
        )
    except VoucherRejectedError as exc:
        return JSONResponse(
            status_code=exc.status_code,
            content={"valid": False, "message": exc.message, "reason": exc.reason},
        )

    discount = calculate_discount(voucher, base_amount)
    logger.info(
        "voucher_validated",
        code=voucher.code,
        household_id=str(user.household_id),
        plan_id=str(plan.id),
        discount_amount=discount,
    )
    return VoucherValidateResponse(
        voucher=VoucherSummary(
            code=voucher.code, name=voucher.name, type=voucher.type, value=voucher.value
        ),
        billing_cycle=billing_cycle,
        base_amount=base_amount,
        discount_amount=discount,
        final_amount=max(0, base_amount - discount),
    )

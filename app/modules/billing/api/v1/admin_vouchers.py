"""Voucher management for platform administrators."""

from typing import Annotated, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.api.v1.billing_models import (
    AdminVoucherResponse,
    VoucherCreate,
    VoucherUpdate,
)
from app.modules.billing.api.v1.billing_ops import (
    create_voucher,
    delete_voucher,
    list_admin_vouchers,
    serialize_admin_voucher,
    update_voucher,
)
from app.shared.core.auth import CurrentUser, require_admin
from app.shared.core.rate_limit import auth_limit
from app.shared.db.session import get_db

router = APIRouter(prefix="/admin/vouchers", tags=["Admin"])


@router.get("", response_model=List[AdminVoucherResponse])
async def list_all_vouchers(
    user: Annotated[CurrentUser, Depends(require_admin)],
    search: Optional[str] = Query(default=None, max_length=50),
    db: AsyncSession = Depends(get_db),
) -> List[AdminVoucherResponse]:
    return await list_admin_vouchers(db, search)


@router.post(
    "", response_model=AdminVoucherResponse, status_code=status.HTTP_201_CREATED
)
@auth_limit
async def create_admin_voucher(
    request: Request,
    body: VoucherCreate,
    user: Annotated[CurrentUser, Depends(require_admin)],
    db: AsyncSession = Depends(get_db),
) -> AdminVoucherResponse:
    return serialize_admin_voucher(await create_voucher(db, body, user))


@router.patch("/{voucher_id}", response_model=AdminVoucherResponse)
@auth_limit
async def update_admin_voucher(
    request: Request,
    voucher_id: UUID,
    body: VoucherUpdate,
    user: Annotated[CurrentUser, Depends(require_admin)],
    db: AsyncSession = Depends(get_db),
) -> AdminVoucherResponse:
    return serialize_admin_voucher(await update_voucher(db, voucher_id, body, user))


@router.delete("/{voucher_id}")
async def delete_admin_voucher(
    voucher_id: UUID,
    user: Annotated[CurrentUser, Depends(require_admin)],
    db: AsyncSession = Depends(get_db),
) -> Dict[str, str]:
    """Vouchers with redemptions are deactivated instead of deleted."""
    action = await delete_voucher(db, voucher_id, user)
    return {"status": action}

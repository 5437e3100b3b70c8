"""
Invoice API Endpoints

Provides:
- GET /invoices - Household invoice history
- GET /invoices/{id} - Invoice detail
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.api.v1.billing_models import (
    InvoiceListResponse,
    InvoiceResponse,
)
from app.modules.billing.api.v1.billing_ops import (
    list_household_invoices,
    load_invoice_for,
    serialize_invoice,
)
from app.shared.core.auth import CurrentUser, require_household_access
from app.shared.core.rate_limit import standard_limit
from app.shared.db.session import get_db

router = APIRouter(prefix="/invoices", tags=["Invoices"])


@router.get("", response_model=InvoiceListResponse)
@standard_limit
async def list_invoices(
    request: Request,
    user: Annotated[CurrentUser, Depends(require_household_access)],
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> InvoiceListResponse:
    invoices, total = await list_household_invoices(
        db, user.household_id, page, per_page
    )
    return InvoiceListResponse(
        data=[await serialize_invoice(db, invoice) for invoice in invoices],
        page=page,
        per_page=per_page,
        total=total,
    )


@router.get("/{invoice_id}", response_model=InvoiceResponse)
@standard_limit
async def get_invoice(
    request: Request,
    invoice_id: UUID,
    user: Annotated[CurrentUser, Depends(require_household_access)],
    db: AsyncSession = Depends(get_db),
) -> InvoiceResponse:
    """Invoices of other households are forbidden, not hidden."""
    return await serialize_invoice(db, await load_invoice_for(db, user, invoice_id))

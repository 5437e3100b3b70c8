"""Plan catalog endpoints. Public, read-only."""

from typing import List
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.api.v1.billing_models import PlanResponse
from app.modules.billing.api.v1.billing_ops import (
    load_active_plan,
    load_public_plans,
    serialize_plan,
)
from app.shared.core.rate_limit import standard_limit
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(prefix="/plans", tags=["Plans"])


@router.get("", response_model=List[PlanResponse])
@standard_limit
async def list_plans(
    request: Request, db: AsyncSession = Depends(get_db)
) -> List[PlanResponse]:
    """Active plans with effective monthly and yearly prices."""
    return await load_public_plans(db)


@router.get("/{plan_id}", response_model=PlanResponse)
@standard_limit
async def get_plan(
    request: Request, plan_id: UUID, db: AsyncSession = Depends(get_db)
) -> PlanResponse:
    return serialize_plan(await load_active_plan(db, plan_id))

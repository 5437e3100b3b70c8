"""Payment gateway callbacks. Authenticated by shared token, not by user session."""

from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.domain.billing.xendit_shared import XENDIT_GATEWAY
from app.modules.billing.domain.billing.xendit_webhook_impl import XenditWebhookHandler
from app.shared.core.exceptions import ResourceNotFoundError
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/{gateway}")
async def handle_webhook(
    gateway: str, request: Request, db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    if gateway.lower() != XENDIT_GATEWAY:
        logger.warning("webhook_unknown_gateway", gateway=gateway)
        raise ResourceNotFoundError("Unknown payment gateway")

    payload = await request.body()
    handler = XenditWebhookHandler(db)
    return await handler.handle(request.headers.get("x-callback-token"), payload)

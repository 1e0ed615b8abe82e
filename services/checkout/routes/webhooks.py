"""Payment gateway notifications"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.session import get_db
from shared.utils.rate_limiter import limiter, RATE_LIMITS
from services.checkout.routes.checkout import get_checkout_service
from services.checkout.services.checkout_service import CheckoutService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/mercadopago")
@limiter.limit(RATE_LIMITS["webhook"])
async def mercado_pago_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: CheckoutService = Depends(get_checkout_service),
):
    """
    Mercado Pago payment notification.

    Runs the same reconciliation as the verify endpoint. A 2xx stops
    redelivery, so only transient failures answer with an error.
    """
    try:
        body = await request.json()
    except json.JSONDecodeError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    gateway = service.gateway
    notification = gateway.parse_notification(body, dict(request.query_params))
    if notification is None:
        return {"status": "ignored"}

    if not gateway.verify_notification(notification, request.headers):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid notification signature")

    outcome = await service.handle_notification(db, notification)
    logger.info(f"Notification for payment {notification.resource_id}: {outcome}")
    return {"status": outcome}

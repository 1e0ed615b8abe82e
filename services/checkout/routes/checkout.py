"""Storefront checkout routes"""
from fastapi import APIRouter, Depends, HTTPException, Query, status, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import logging

from shared.database.session import get_db
from shared.utils.rate_limiter import limiter, RATE_LIMITS
from services.checkout.models.checkout import (
    CancelRequest,
    CancelResponse,
    CheckoutRequest,
    CheckoutSessionResponse,
    OrderResponse,
    OrderStatusResponse,
    TicketResponse,
    VerifyResponse,
)
from services.checkout.models.order import Order, OrderStatus
from services.checkout.services.checkout_service import CheckoutService
from services.checkout.services.fee_calculator import FeeCalculator

logger = logging.getLogger(__name__)

router = APIRouter()

# Shared across requests so the tier cache lives for the whole process
fee_calculator = FeeCalculator()


def get_checkout_service() -> CheckoutService:
    return CheckoutService(fee_calculator=fee_calculator)


def order_response(order: Order) -> OrderResponse:
    return OrderResponse(
        id=order.id,
        order_number=order.order_number,
        status=order.status.value,
        customer_email=order.customer_email,
        subtotal=order.subtotal,
        total=order.total,
        currency=order.currency,
        completed_at=order.completed_at,
        tickets=[
            TicketResponse(
                id=ticket.id,
                ticket_number=ticket.ticket_number,
                ticket_type_id=ticket.ticket_type_id,
                redemption_code=ticket.redemption_code,
                used_at=ticket.used_at,
            )
            for ticket in order.tickets
        ],
    )


@router.post("/{identifier}/checkout", response_model=CheckoutSessionResponse)
@limiter.limit(RATE_LIMITS["checkout"])
async def create_checkout_session(
    request: Request,  # required by the rate limiter
    identifier: str,
    checkout_request: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    service: CheckoutService = Depends(get_checkout_service),
):
    """Create a pending order and open a hosted payment session for it"""
    result = await service.create_session(db, identifier, checkout_request)
    return CheckoutSessionResponse(**result)


@router.api_route("/{identifier}/checkout/verify", methods=["GET", "POST"], response_model=VerifyResponse)
@limiter.limit(RATE_LIMITS["verify"])
async def verify_checkout_session(
    request: Request,
    identifier: str,
    session: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    service: CheckoutService = Depends(get_checkout_service),
):
    """
    Confirm payment for a session and return the order with its tickets.

    Safe to call repeatedly and concurrently (browser redirect, retries).
    """
    if not session:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="session query parameter is required")
    order = await service.verify_session(db, identifier, session)
    return VerifyResponse(success=order.status == OrderStatus.COMPLETED, order=order_response(order))


@router.get("/{identifier}/checkout/status/{order_id_or_ref}", response_model=OrderStatusResponse)
@limiter.limit(RATE_LIMITS["status"])
async def get_checkout_status(
    request: Request,
    identifier: str,
    order_id_or_ref: str,
    db: AsyncSession = Depends(get_db),
    service: CheckoutService = Depends(get_checkout_service),
):
    """Poll an order by id or gateway payment reference"""
    result = await service.get_order_status(db, identifier, order_id_or_ref)
    return OrderStatusResponse(**result)


@router.post("/{identifier}/checkout/cancel", response_model=CancelResponse)
@limiter.limit(RATE_LIMITS["checkout"])
async def cancel_checkout_session(
    request: Request,
    identifier: str,
    cancel_request: CancelRequest,
    db: AsyncSession = Depends(get_db),
    service: CheckoutService = Depends(get_checkout_service),
):
    """Cancel a checkout that has not completed"""
    result = await service.cancel_session(db, identifier, cancel_request.payment_reference_id)
    return CancelResponse(**result)

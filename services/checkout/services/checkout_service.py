"""Checkout orchestration: order -> gateway session -> confirmed payment -> tickets"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from shared.errors import (
    CheckoutError,
    OrderAlreadyCompletedError,
    OrderNotFoundError,
    PaymentFailedError,
    PaymentInitFailedError,
    PaymentNotCompleteError,
    SessionVerificationFailedError,
)
from services.checkout.gateway.factory import get_gateway
from services.checkout.gateway.port import (
    ConnectedAccount,
    GatewayError,
    GatewayNotification,
    GatewayUnavailableError,
    LineItem,
    PaymentGateway,
    PaymentStatus,
    SessionRequest,
    SessionStatus,
)
from services.checkout.models.checkout import CheckoutRequest
from services.checkout.models.order import Order, OrderStatus
from services.checkout.services.fee_calculator import FeeCalculator
from services.checkout.services.order_repository import CartLine, CustomerInfo, OrderRepository
from services.checkout.services.storefront_service import StorefrontService
from services.checkout.services.ticket_issuer import TicketIssuer

logger = logging.getLogger(__name__)

# Gateway statuses whose payment id is worth keeping before confirmation (it can still be cancelled)
CANCELABLE_GATEWAY_STATUSES = {"pending", "in_process", "authorized"}


def parse_uuid(value: str) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except ValueError:
        return None


class CheckoutService:
    """
    Drives an order through pending -> processing -> completed|canceled.

    Buyer-initiated verification and gateway notifications share
    ``reconcile``, so both completion paths race safely on the same
    conditional writes.
    """

    def __init__(
        self,
        gateway: Optional[PaymentGateway] = None,
        fee_calculator: Optional[FeeCalculator] = None,
        orders: Optional[OrderRepository] = None,
        storefronts: Optional[StorefrontService] = None,
        issuer: Optional[TicketIssuer] = None,
    ):
        self._gateway = gateway
        self.fee_calculator = fee_calculator or FeeCalculator()
        self.orders = orders or OrderRepository()
        self.storefronts = storefronts or StorefrontService()
        self.issuer = issuer or TicketIssuer(self.orders)

    @property
    def gateway(self) -> PaymentGateway:
        return self._gateway or get_gateway()

    async def create_session(self, db: AsyncSession, identifier: str, request: CheckoutRequest) -> Dict:
        storefront = await self.storefronts.resolve(db, identifier)
        account = await self.storefronts.get_payment_account(db, storefront.org_id)

        lines = await self.orders.price_cart(
            db,
            storefront.attraction_id,
            [CartLine(ticket_type_id=item.ticket_type_id, quantity=item.quantity) for item in request.items],
        )
        subtotal = sum(line.total_price for line in lines)
        platform_fee = await self.fee_calculator.calculate_fee(db, storefront.org_id, subtotal)

        order = await self.orders.create_order(
            db,
            org_id=storefront.org_id,
            attraction_id=storefront.attraction_id,
            customer=CustomerInfo(
                email=request.customer_email,
                name=request.customer_name,
                phone=request.customer_phone,
            ),
            lines=lines,
            platform_fee=platform_fee,
            currency=settings.CURRENCY,
        )

        storefront_url = f"{settings.APP_BASE_URL}/s/{storefront.slug}"
        session_request = SessionRequest(
            order_id=str(order.id),
            order_number=order.order_number,
            org_id=str(order.org_id),
            attraction_id=str(order.attraction_id),
            currency=order.currency,
            line_items=tuple(
                LineItem(
                    reference=str(line.ticket_type_id),
                    title=f"{storefront.name} - {line.name}",
                    description=line.description,
                    quantity=line.quantity,
                    unit_amount=line.unit_price,
                )
                for line in lines
            ),
            total=order.total,
            application_fee=order.platform_fee,
            customer_email=order.customer_email,
            customer_name=order.customer_name,
            success_url=request.success_url or f"{storefront_url}/checkout/success?order={order.id}",
            cancel_url=request.cancel_url or f"{storefront_url}/checkout/canceled?order={order.id}",
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=settings.CHECKOUT_SESSION_TTL_MINUTES),
        )

        try:
            session = await self.gateway.create_session(account, session_request)
        except Exception as e:
            logger.error(f"Payment session creation failed for order {order.order_number}: {e}", exc_info=True)
            await self.orders.transition(
                db,
                order.id,
                OrderStatus.CANCELED,
                reason=f"Payment session creation failed: {type(e).__name__}: {e}",
            )
            raise PaymentInitFailedError() from e

        result = await self.orders.open_session(db, order.id, session.session_id)
        logger.info(f"Checkout session {session.session_id} opened for order {order.order_number}")
        return {
            "checkout_url": session.checkout_url,
            "session_id": session.session_id,
            "order_id": result.order.id,
            "order_number": result.order.order_number,
            "total": result.order.total,
            "platform_fee": result.order.platform_fee,
            "currency": result.order.currency,
            "expires_at": session.expires_at,
        }

    async def verify_session(self, db: AsyncSession, identifier: str, session_id: str) -> Order:
        storefront = await self.storefronts.resolve(db, identifier)
        order = await self.orders.find_by_session_id(db, storefront.org_id, session_id)
        if order is None:
            raise OrderNotFoundError(session_id)
        return await self.reconcile(db, order)

    async def reconcile(
        self, db: AsyncSession, order: Order, account: Optional[ConnectedAccount] = None
    ) -> Order:
        """Apply the gateway's view of the order's session. Returns the order with tickets."""
        if account is None:
            account = await self.storefronts.get_payment_account(db, order.org_id, require_enabled=False)

        try:
            status = await self.gateway.retrieve_session(account, order.payment_session_id, str(order.id))
        except GatewayError as e:
            logger.warning(f"Could not verify session {order.payment_session_id} for order {order.order_number}: {e}")
            raise SessionVerificationFailedError() from e

        if status.payment_status != PaymentStatus.PAID:
            return await self._handle_unpaid(db, order, status)

        if order.status == OrderStatus.COMPLETED:
            return await self.issuer.ensure_tickets(db, order)

        if status.payment_reference:
            if order.payment_reference_id and order.payment_reference_id != status.payment_reference:
                logger.warning(
                    f"Order {order.order_number}: pending payment {order.payment_reference_id} "
                    f"superseded by confirmed payment {status.payment_reference}"
                )
            await self.orders.record_payment_reference(
                db, order.id, status.payment_reference, confirmed=True
            )

        if order.status == OrderStatus.CANCELED:
            # Local record is authoritative; the charge needs an operator refund
            logger.error(
                f"Payment {status.payment_reference} confirmed for canceled order {order.order_number}; refund required"
            )
            if order.payment_reference_id is None:
                await self.orders.add_note(
                    db, order.id, f"Payment {status.payment_reference} confirmed after cancellation; refund required"
                )
            return await self.orders.get(db, order.id, with_tickets=True)

        return await self.issuer.complete(db, order.org_id, order.id)

    async def _handle_unpaid(self, db: AsyncSession, order: Order, status: SessionStatus) -> Order:
        if order.status == OrderStatus.CANCELED:
            return await self.orders.get(db, order.id, with_tickets=True)

        if status.payment_reference and status.gateway_status in CANCELABLE_GATEWAY_STATUSES:
            await self.orders.record_payment_reference(db, order.id, status.payment_reference)

        if status.payment_status.is_terminal_failure and order.status == OrderStatus.PROCESSING:
            result = await self.orders.transition(
                db,
                order.id,
                OrderStatus.CANCELED,
                reason=f"Payment {status.payment_status.value} at gateway ({status.gateway_status or 'no payment'})",
            )
            if result.order.status == OrderStatus.CANCELED:
                raise PaymentFailedError(status.payment_status.value)

        raise PaymentNotCompleteError(status.payment_status.value)

    async def cancel_session(self, db: AsyncSession, identifier: str, payment_reference_id: str) -> Dict:
        storefront = await self.storefronts.resolve(db, identifier)
        order = (
            await self.orders.find_by_reference(db, storefront.org_id, payment_reference_id)
            or await self.orders.find_by_session_id(db, storefront.org_id, payment_reference_id)
        )
        if order is None:
            raise OrderNotFoundError(payment_reference_id)

        # The conditional write decides; a completion that wins the race is reported, not overwritten
        result = await self.orders.transition(
            db,
            order.id,
            OrderStatus.CANCELED,
            reason="Checkout canceled by customer",
            only_from=[OrderStatus.PROCESSING],
        )
        if result.order.status == OrderStatus.COMPLETED:
            raise OrderAlreadyCompletedError()
        if not result.changed:
            return {"success": True, "message": "Checkout already canceled"}

        reference = result.order.payment_reference_id
        if reference:
            try:
                account = await self.storefronts.get_payment_account(db, order.org_id, require_enabled=False)
                await self.gateway.cancel_charge(account, reference)
            except (GatewayError, CheckoutError) as e:
                logger.warning(
                    f"Gateway cancel of {reference} failed for order {order.order_number}; "
                    f"order stays canceled locally: {e}"
                )
        return {"success": True, "message": "Checkout canceled"}

    async def get_order_status(self, db: AsyncSession, identifier: str, order_id_or_ref: str) -> Dict:
        storefront = await self.storefronts.resolve(db, identifier)
        order = None
        order_id = parse_uuid(order_id_or_ref)
        if order_id is not None:
            order = await self.orders.get(db, order_id, org_id=storefront.org_id)
        if order is None:
            order = await self.orders.find_by_reference(db, storefront.org_id, order_id_or_ref)
        if order is None:
            raise OrderNotFoundError(order_id_or_ref)

        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "status": order.status.value,
            "total": order.total,
            "ticket_count": await self.orders.count_tickets(db, order.id),
        }

    async def handle_notification(self, db: AsyncSession, notification: GatewayNotification) -> str:
        """
        Gateway-initiated completion signal.

        Returns a short outcome label. Business outcomes never raise so the
        gateway stops redelivering; transport failures raise
        SessionVerificationFailedError so it retries later.
        """
        if not notification.account_id:
            logger.warning(f"Notification {notification.resource_id} without seller account; ignored")
            return "ignored"
        org_id = await self.storefronts.find_org_by_account(db, notification.account_id)
        if org_id is None:
            logger.warning(f"Notification for unknown seller account {notification.account_id}; ignored")
            return "ignored"
        account = await self.storefronts.get_payment_account(db, org_id, require_enabled=False)

        try:
            order_ref = await self.gateway.resolve_order_id(account, notification.resource_id)
        except GatewayUnavailableError as e:
            raise SessionVerificationFailedError() from e
        except GatewayError as e:
            logger.warning(f"Notified payment {notification.resource_id} could not be read: {e}")
            return "ignored"

        order_id = parse_uuid(order_ref) if order_ref else None
        order = await self.orders.get(db, order_id, org_id=org_id) if order_id else None
        if order is None:
            logger.warning(f"Notified payment {notification.resource_id} does not match an order")
            return "ignored"
        if order.status != OrderStatus.PROCESSING or not order.payment_session_id:
            return order.status.value

        try:
            order = await self.reconcile(db, order, account)
        except PaymentNotCompleteError:
            return "pending"
        except PaymentFailedError:
            return OrderStatus.CANCELED.value
        return order.status.value

"""Order completion and ticket issuance"""
import logging
import secrets
from typing import List, Optional, Set
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.models import Attraction, Ticket as TicketRow, TicketWaiver
from shared.errors import OrderNotFoundError
from shared.utils.retry import retry_with_backoff
from services.checkout.models.order import Order, OrderStatus
from services.checkout.services.order_repository import OrderRepository

logger = logging.getLogger(__name__)

# 12 hex chars; uniqueness is enforced by the tickets.redemption_code index
REDEMPTION_CODE_BYTES = 6

DEFAULT_WAIVER_TEXT = (
    "I acknowledge the risks of participating in this attraction and accept "
    "the terms and conditions of entry."
)


def generate_redemption_code() -> str:
    return secrets.token_hex(REDEMPTION_CODE_BYTES).upper()


def ticket_number(order_number: str, sequence: int) -> str:
    return f"{order_number}-{sequence:03d}"


def plan_tickets(order: Order) -> List[dict]:
    """One entry per purchased unit, numbered 1..N across items in a stable order"""
    planned = []
    sequence = 0
    for item in order.items:
        for _ in range(item.quantity):
            sequence += 1
            planned.append({
                "ticket_number": ticket_number(order.order_number, sequence),
                "order_item_id": item.id,
                "ticket_type_id": item.ticket_type_id,
            })
    return planned


class TicketIssuer:
    """
    Completes orders and issues their tickets exactly once.

    The processing -> completed flip, the ticket inserts and the waiver insert
    share one transaction, so either all of them land or none do.
    """

    def __init__(self, orders: Optional[OrderRepository] = None):
        self.orders = orders or OrderRepository()

    async def complete(self, db: AsyncSession, org_id: UUID, order_id: UUID) -> Order:
        order = await self.orders.get(db, order_id, org_id=org_id)
        if order is None:
            raise OrderNotFoundError(str(order_id))

        async def attempt() -> Order:
            return await self._complete_once(db, order)

        async def rollback(_exc):
            await db.rollback()

        # A redemption code collision aborts the whole unit, including the flip
        return await retry_with_backoff(
            attempt,
            max_retries=3,
            initial_delay=0.01,
            max_delay=0.1,
            exceptions=(IntegrityError,),
            before_retry=rollback,
        )

    async def _complete_once(self, db: AsyncSession, order: Order) -> Order:
        try:
            result = await self.orders.transition(db, order.id, OrderStatus.COMPLETED, commit=False)
            if result.changed:
                await self._insert_tickets(db, order, existing=set())
                await self._record_waiver(db, order)
                await db.commit()
                logger.info(f"Order {order.order_number} completed with {order.unit_count} tickets")
                return await self.orders.get(db, order.id, with_tickets=True)
        except Exception:
            await db.rollback()
            raise

        # Lost the flip, or the order was already terminal
        await db.rollback()
        current = result.order
        if current.status != OrderStatus.COMPLETED:
            logger.warning(
                f"Completion requested for order {current.order_number} in status {current.status.value}"
            )
            return current
        return await self.ensure_tickets(db, current)

    async def ensure_tickets(self, db: AsyncSession, order: Order) -> Order:
        """Issue only the tickets a completed order is missing"""

        async def repair() -> None:
            existing = {ticket.ticket_number for ticket in await self.orders.list_tickets(db, order.id)}
            if len(existing) >= order.unit_count:
                return
            logger.warning(
                f"Order {order.order_number} is completed with {len(existing)}/{order.unit_count} tickets; "
                f"issuing the missing ones"
            )
            await self._insert_tickets(db, order, existing)
            await db.commit()

        async def rollback(_exc):
            # Concurrent repair or a code collision; re-read what exists and try again
            await db.rollback()

        await retry_with_backoff(
            repair,
            max_retries=3,
            initial_delay=0.01,
            max_delay=0.1,
            exceptions=(IntegrityError,),
            before_retry=rollback,
        )
        return await self.orders.get(db, order.id, with_tickets=True)

    async def _insert_tickets(self, db: AsyncSession, order: Order, existing: Set[str]) -> None:
        rows = [
            TicketRow(
                org_id=order.org_id,
                order_id=order.id,
                order_item_id=planned["order_item_id"],
                ticket_type_id=planned["ticket_type_id"],
                attraction_id=order.attraction_id,
                ticket_number=planned["ticket_number"],
                redemption_code=generate_redemption_code(),
            )
            for planned in plan_tickets(order)
            if planned["ticket_number"] not in existing
        ]
        db.add_all(rows)
        await db.flush()

    async def _record_waiver(self, db: AsyncSession, order: Order) -> None:
        result = await db.execute(
            select(Attraction.requires_waiver, Attraction.waiver_text).where(Attraction.id == order.attraction_id)
        )
        attraction = result.one_or_none()
        if attraction is None or not attraction.requires_waiver:
            return
        db.add(TicketWaiver(
            org_id=order.org_id,
            order_id=order.id,
            customer_email=order.customer_email,
            customer_name=order.customer_name,
            waiver_text=attraction.waiver_text or DEFAULT_WAIVER_TEXT,
        ))
        await db.flush()

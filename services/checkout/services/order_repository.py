"""Order aggregate persistence and the order status state machine.

Every status write goes through ``transition``: a single conditional UPDATE
that only matches rows still in a legal source state. Concurrency losers see
``changed=False`` together with the state the winner left behind.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Set
from uuid import UUID

from sqlalchemy import select, update, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database.models import (
    Order as OrderRow,
    OrderItem as OrderItemRow,
    OrderNote,
    Ticket as TicketRow,
    TicketType,
)
from shared.errors import (
    CheckoutError,
    ErrorCode,
    InvalidOrderStatusError,
    InvalidTicketTypesError,
    OrderNotFoundError,
    QuantityError,
    SoldOutError,
)
from shared.utils.retry import retry_with_backoff
from services.checkout.models.order import Order, OrderStatus, Ticket, order_from_row, ticket_from_row

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELED},
    OrderStatus.PROCESSING: {OrderStatus.COMPLETED, OrderStatus.CANCELED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELED: set(),
}


def allowed_sources(target: OrderStatus) -> List[str]:
    return [source.value for source, targets in ORDER_TRANSITIONS.items() if target in targets]


@dataclass(frozen=True)
class CartLine:
    ticket_type_id: UUID
    quantity: int


@dataclass(frozen=True)
class PricedLine:
    ticket_type_id: UUID
    name: str
    description: Optional[str]
    quantity: int
    unit_price: int

    @property
    def total_price(self) -> int:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class CustomerInfo:
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class TransitionResult:
    order: Order
    changed: bool


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderRepository:
    """Only writer of order status"""

    async def price_cart(
        self, db: AsyncSession, attraction_id: UUID, lines: Sequence[CartLine]
    ) -> List[PricedLine]:
        """Validate cart lines against the attraction's ticket types. No writes."""
        quantities: "OrderedDict[UUID, int]" = OrderedDict()
        for line in lines:
            if line.quantity <= 0:
                raise InvalidTicketTypesError("Ticket quantities must be positive")
            quantities[line.ticket_type_id] = quantities.get(line.ticket_type_id, 0) + line.quantity
        if not quantities:
            raise InvalidTicketTypesError("Cart is empty")

        result = await db.execute(
            select(TicketType).where(
                TicketType.id.in_(list(quantities)),
                TicketType.attraction_id == attraction_id,
                TicketType.is_active.is_(True),
            ).execution_options(populate_existing=True)
        )
        ticket_types = {tt.id: tt for tt in result.scalars().all()}
        if len(ticket_types) != len(quantities):
            raise InvalidTicketTypesError()

        priced = []
        for ticket_type_id, quantity in quantities.items():
            tt = ticket_types[ticket_type_id]
            if quantity < tt.min_per_order:
                raise QuantityError(ErrorCode.MIN_QUANTITY_NOT_MET, tt.name, tt.min_per_order)
            if quantity > tt.max_per_order:
                raise QuantityError(ErrorCode.MAX_QUANTITY_EXCEEDED, tt.name, tt.max_per_order)
            if tt.capacity is not None and tt.sold_count + quantity > tt.capacity:
                raise SoldOutError(tt.name)
            priced.append(PricedLine(
                ticket_type_id=tt.id,
                name=tt.name,
                description=tt.description,
                quantity=quantity,
                unit_price=tt.price,
            ))
        return priced

    async def create_order(
        self,
        db: AsyncSession,
        org_id: UUID,
        attraction_id: UUID,
        customer: CustomerInfo,
        lines: Sequence[PricedLine],
        platform_fee: int,
        currency: str,
    ) -> Order:
        """Insert a pending order, reserving availability for every line"""
        subtotal = sum(line.total_price for line in lines)

        async def attempt() -> UUID:
            try:
                for line in lines:
                    await self._reserve(db, line)
                order_number = await self._next_order_number(db, org_id)
                row = OrderRow(
                    org_id=org_id,
                    attraction_id=attraction_id,
                    order_number=order_number,
                    customer_email=customer.email,
                    customer_name=customer.name,
                    customer_phone=customer.phone,
                    currency=currency,
                    subtotal=subtotal,
                    platform_fee=platform_fee,
                    total=subtotal,
                    status=OrderStatus.PENDING.value,
                )
                db.add(row)
                await db.flush()
                db.add_all([
                    OrderItemRow(
                        order_id=row.id,
                        ticket_type_id=line.ticket_type_id,
                        quantity=line.quantity,
                        unit_price=line.unit_price,
                        total_price=line.total_price,
                    )
                    for line in lines
                ])
                await db.commit()
                return row.id
            except CheckoutError:
                await db.rollback()
                raise

        async def rollback(_exc):
            await db.rollback()

        # Order numbers are count based; a concurrent insert can take ours
        order_id = await retry_with_backoff(
            attempt,
            max_retries=4,
            initial_delay=0.05,
            max_delay=0.5,
            exceptions=(IntegrityError,),
            before_retry=rollback,
        )
        order = await self.get(db, order_id)
        logger.info(
            f"Order {order.order_number} created for attraction {attraction_id}: "
            f"subtotal={subtotal} fee={platform_fee} units={order.unit_count}"
        )
        return order

    async def get(
        self,
        db: AsyncSession,
        order_id: UUID,
        org_id: Optional[UUID] = None,
        with_tickets: bool = False,
    ) -> Optional[Order]:
        query = select(OrderRow).where(OrderRow.id == order_id)
        if org_id is not None:
            query = query.where(OrderRow.org_id == org_id)
        return await self._load(db, query, with_tickets)

    async def find_by_session_id(
        self, db: AsyncSession, org_id: UUID, session_id: str, with_tickets: bool = False
    ) -> Optional[Order]:
        query = select(OrderRow).where(
            OrderRow.org_id == org_id,
            OrderRow.payment_session_id == session_id,
        )
        return await self._load(db, query, with_tickets)

    async def find_by_reference(
        self, db: AsyncSession, org_id: UUID, payment_reference_id: str, with_tickets: bool = False
    ) -> Optional[Order]:
        query = select(OrderRow).where(
            OrderRow.org_id == org_id,
            OrderRow.payment_reference_id == payment_reference_id,
        )
        return await self._load(db, query, with_tickets)

    async def list_tickets(self, db: AsyncSession, order_id: UUID) -> List[Ticket]:
        result = await db.execute(
            select(TicketRow)
            .where(TicketRow.order_id == order_id)
            .order_by(TicketRow.ticket_number)
            .execution_options(populate_existing=True)
        )
        return [ticket_from_row(row) for row in result.scalars().all()]

    async def count_tickets(self, db: AsyncSession, order_id: UUID) -> int:
        result = await db.execute(
            select(func.count()).select_from(TicketRow).where(TicketRow.order_id == order_id)
        )
        return result.scalar_one()

    async def open_session(self, db: AsyncSession, order_id: UUID, session_id: str) -> TransitionResult:
        """pending -> processing, storing the gateway session id in the same write"""
        return await self.transition(
            db, order_id, OrderStatus.PROCESSING, values={"payment_session_id": session_id}
        )

    async def record_payment_reference(
        self, db: AsyncSession, order_id: UUID, reference: str, confirmed: bool = False
    ) -> bool:
        """
        Store the gateway charge id.

        Pre-confirmation ids are write once. A ``confirmed`` charge replaces
        whatever a processing order holds; terminal orders keep their value.
        """
        matches = or_(OrderRow.payment_reference_id.is_(None), OrderRow.payment_reference_id == reference)
        if confirmed:
            matches = or_(matches, OrderRow.status == OrderStatus.PROCESSING.value)
        result = await db.execute(
            update(OrderRow)
            .where(OrderRow.id == order_id, matches)
            .values(payment_reference_id=reference, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount == 0:
            logger.warning(f"Order {order_id} already has a different payment reference; kept existing")
            return False
        return True

    async def transition(
        self,
        db: AsyncSession,
        order_id: UUID,
        target: OrderStatus,
        reason: Optional[str] = None,
        values: Optional[dict] = None,
        commit: bool = True,
        only_from: Optional[Sequence[OrderStatus]] = None,
    ) -> TransitionResult:
        """
        Move an order to ``target`` with one conditional UPDATE.

        Terminal orders are returned unchanged (``changed=False``). Skipping a
        state from a non-terminal order raises InvalidOrderStatusError, as
        does a legal source excluded by ``only_from``.

        With ``commit=False`` the caller owns the transaction: nothing is
        committed or rolled back here, which lets completion bundle the flip
        with ticket issuance.
        """
        now = _utcnow()
        stamped = {"status": target.value, "updated_at": now}
        if target == OrderStatus.COMPLETED:
            stamped["completed_at"] = now
        elif target == OrderStatus.CANCELED:
            stamped["canceled_at"] = now
        stamped.update(values or {})

        sources = allowed_sources(target)
        if only_from is not None:
            sources = [source for source in sources if source in {status.value for status in only_from}]

        result = await db.execute(
            update(OrderRow)
            .where(OrderRow.id == order_id, OrderRow.status.in_(sources))
            .values(**stamped)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 1:
            if target == OrderStatus.CANCELED:
                await self._release(db, order_id)
            if reason:
                db.add(OrderNote(order_id=order_id, body=reason))
            if commit:
                await db.commit()
            order = await self.get(db, order_id)
            logger.info(f"Order {order.order_number} -> {target.value}" + (f" ({reason})" if reason else ""))
            return TransitionResult(order=order, changed=True)

        if commit:
            await db.rollback()
        current = await self.get(db, order_id)
        if current is None:
            raise OrderNotFoundError(str(order_id))
        if current.status == target or current.status.is_terminal:
            logger.info(
                f"Order {current.order_number} is {current.status.value}; transition to {target.value} is a no-op"
            )
            return TransitionResult(order=current, changed=False)
        raise InvalidOrderStatusError(current.status.value, target.value)

    async def add_note(self, db: AsyncSession, order_id: UUID, body: str) -> None:
        """Append an audit note; allowed on terminal orders"""
        db.add(OrderNote(order_id=order_id, body=body))
        await db.commit()

    async def list_notes(self, db: AsyncSession, order_id: UUID) -> List[str]:
        result = await db.execute(
            select(OrderNote.body).where(OrderNote.order_id == order_id).order_by(OrderNote.created_at)
        )
        return list(result.scalars().all())

    async def _load(self, db: AsyncSession, query, with_tickets: bool) -> Optional[Order]:
        result = await db.execute(query.execution_options(populate_existing=True))
        row = result.scalar_one_or_none()
        if row is None:
            return None
        items_result = await db.execute(
            select(OrderItemRow)
            .where(OrderItemRow.order_id == row.id)
            .order_by(OrderItemRow.created_at, OrderItemRow.id)
            .execution_options(populate_existing=True)
        )
        tickets = []
        if with_tickets:
            tickets_result = await db.execute(
                select(TicketRow)
                .where(TicketRow.order_id == row.id)
                .execution_options(populate_existing=True)
            )
            tickets = tickets_result.scalars().all()
        return order_from_row(row, items_result.scalars().all(), tickets)

    async def _reserve(self, db: AsyncSession, line: PricedLine) -> None:
        result = await db.execute(
            update(TicketType)
            .where(
                TicketType.id == line.ticket_type_id,
                or_(
                    TicketType.capacity.is_(None),
                    TicketType.sold_count + line.quantity <= TicketType.capacity,
                ),
            )
            .values(sold_count=TicketType.sold_count + line.quantity)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise SoldOutError(line.name)

    async def _release(self, db: AsyncSession, order_id: UUID) -> None:
        result = await db.execute(
            select(OrderItemRow.ticket_type_id, OrderItemRow.quantity).where(OrderItemRow.order_id == order_id)
        )
        for ticket_type_id, quantity in result.all():
            await db.execute(
                update(TicketType)
                .where(TicketType.id == ticket_type_id, TicketType.sold_count >= quantity)
                .values(sold_count=TicketType.sold_count - quantity)
                .execution_options(synchronize_session=False)
            )

    async def _next_order_number(self, db: AsyncSession, org_id: UUID) -> str:
        """PREFIX-YYYYMMDD-NNNN, NNNN counting every order issued under that prefix today"""
        prefix = f"{org_id.hex[:4].upper()}-{_utcnow().strftime('%Y%m%d')}"
        result = await db.execute(
            select(func.count()).select_from(OrderRow).where(OrderRow.order_number.like(f"{prefix}-%"))
        )
        return f"{prefix}-{result.scalar_one() + 1:04d}"

"""Typed order, item and ticket records returned by the checkout services.

Rows never leave the repository layer; each entity has exactly one mapping
function from its SQLAlchemy row.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence, Tuple
from uuid import UUID

from shared.database import models


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.CANCELED)


@dataclass(frozen=True)
class OrderItem:
    id: UUID
    ticket_type_id: UUID
    quantity: int
    unit_price: int
    total_price: int


@dataclass(frozen=True)
class Ticket:
    id: UUID
    order_id: UUID
    order_item_id: UUID
    ticket_type_id: UUID
    attraction_id: UUID
    ticket_number: str
    redemption_code: str
    used_at: Optional[datetime] = None


@dataclass(frozen=True)
class Order:
    id: UUID
    org_id: UUID
    attraction_id: UUID
    order_number: str
    customer_email: str
    customer_name: Optional[str]
    currency: str
    subtotal: int
    platform_fee: int
    total: int
    status: OrderStatus
    payment_session_id: Optional[str]
    payment_reference_id: Optional[str]
    created_at: Optional[datetime]
    completed_at: Optional[datetime]
    items: Tuple[OrderItem, ...] = ()
    tickets: Tuple[Ticket, ...] = field(default=())

    @property
    def unit_count(self) -> int:
        return sum(item.quantity for item in self.items)


def order_item_from_row(row: models.OrderItem) -> OrderItem:
    return OrderItem(
        id=row.id,
        ticket_type_id=row.ticket_type_id,
        quantity=row.quantity,
        unit_price=row.unit_price,
        total_price=row.total_price,
    )


def ticket_from_row(row: models.Ticket) -> Ticket:
    return Ticket(
        id=row.id,
        order_id=row.order_id,
        order_item_id=row.order_item_id,
        ticket_type_id=row.ticket_type_id,
        attraction_id=row.attraction_id,
        ticket_number=row.ticket_number,
        redemption_code=row.redemption_code,
        used_at=row.used_at,
    )


def order_from_row(
    row: models.Order,
    items: Sequence[models.OrderItem] = (),
    tickets: Sequence[models.Ticket] = (),
) -> Order:
    return Order(
        id=row.id,
        org_id=row.org_id,
        attraction_id=row.attraction_id,
        order_number=row.order_number,
        customer_email=row.customer_email,
        customer_name=row.customer_name,
        currency=row.currency,
        subtotal=row.subtotal,
        platform_fee=row.platform_fee,
        total=row.total,
        status=OrderStatus(row.status),
        payment_session_id=row.payment_session_id,
        payment_reference_id=row.payment_reference_id,
        created_at=row.created_at,
        completed_at=row.completed_at,
        items=tuple(order_item_from_row(item) for item in items),
        tickets=tuple(ticket_from_row(ticket) for ticket in sorted(tickets, key=lambda t: t.ticket_number)),
    )

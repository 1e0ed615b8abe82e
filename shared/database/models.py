"""SQLAlchemy models for storefront checkout and check-in"""
from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, ForeignKey, Numeric, Text, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid
from shared.database.connection import Base


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    subscription_tier = Column(String, nullable=False, server_default="free")  # free, pro, enterprise
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    attractions = relationship("Attraction", back_populates="organization")


class Attraction(Base):
    __tablename__ = "attractions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    org_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, nullable=False, index=True)
    status = Column(String, nullable=False, server_default="draft")  # draft, active, archived
    requires_waiver = Column(Boolean, nullable=False, default=False, server_default="false")
    waiver_text = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    organization = relationship("Organization", back_populates="attractions")
    ticket_types = relationship("TicketType", back_populates="attraction")


class StorefrontDomain(Base):
    __tablename__ = "storefront_domains"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    attraction_id = Column(UUID(as_uuid=True), ForeignKey("attractions.id"), nullable=False)
    domain = Column(String, unique=True, nullable=False, index=True)
    is_verified = Column(Boolean, nullable=False, default=False, server_default="false")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class PaymentAccount(Base):
    """Connected seller account at the payment gateway (one per organization)"""
    __tablename__ = "payment_accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    org_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), unique=True, nullable=False)
    provider = Column(String, nullable=False, server_default="mercadopago")
    provider_account_id = Column(String, nullable=False, index=True)  # collector / user id at the gateway
    access_token = Column(String, nullable=True)  # seller token obtained via OAuth
    status = Column(String, nullable=False, server_default="pending")  # pending, active, restricted, disabled
    charges_enabled = Column(Boolean, nullable=False, default=False, server_default="false")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class SubscriptionTierConfig(Base):
    __tablename__ = "subscription_tier_configs"

    tier = Column(String, primary_key=True)
    transaction_fee_percentage = Column(Numeric(5, 2), nullable=False)
    transaction_fee_fixed_cents = Column(Integer, nullable=False, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")


class TicketType(Base):
    __tablename__ = "ticket_types"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    org_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    attraction_id = Column(UUID(as_uuid=True), ForeignKey("attractions.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    price = Column(Integer, nullable=False)  # cents
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    min_per_order = Column(Integer, nullable=False, server_default="1")
    max_per_order = Column(Integer, nullable=False, server_default="10")
    capacity = Column(Integer, nullable=True)  # NULL = unlimited
    sold_count = Column(Integer, nullable=False, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    attraction = relationship("Attraction", back_populates="ticket_types")


class Order(Base):
    __tablename__ = "orders"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    org_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    attraction_id = Column(UUID(as_uuid=True), ForeignKey("attractions.id"), nullable=False)
    order_number = Column(String, unique=True, nullable=False)
    customer_email = Column(String, nullable=False, index=True)
    customer_name = Column(String, nullable=True)
    customer_phone = Column(String, nullable=True)
    currency = Column(String, nullable=False, server_default="USD")
    # Amounts in cents; the platform fee is taken from the seller payout, not added to total
    subtotal = Column(Integer, nullable=False)
    platform_fee = Column(Integer, nullable=False, server_default="0")
    total = Column(Integer, nullable=False)
    status = Column(String, nullable=False, server_default="pending")  # pending, processing, completed, canceled
    payment_session_id = Column(String, unique=True, nullable=True, index=True)
    payment_reference_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)

    items = relationship("OrderItem", back_populates="order")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False, index=True)
    ticket_type_id = Column(UUID(as_uuid=True), ForeignKey("ticket_types.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)
    total_price = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    order = relationship("Order", back_populates="items")


class OrderNote(Base):
    """Append-only audit trail for an order"""
    __tablename__ = "order_notes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False, index=True)
    body = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        UniqueConstraint("order_id", "ticket_number", name="uq_tickets_order_ticket_number"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    org_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False, index=True)
    order_item_id = Column(UUID(as_uuid=True), ForeignKey("order_items.id"), nullable=False)
    ticket_type_id = Column(UUID(as_uuid=True), ForeignKey("ticket_types.id"), nullable=False)
    attraction_id = Column(UUID(as_uuid=True), ForeignKey("attractions.id"), nullable=False, index=True)
    ticket_number = Column(String, nullable=False)
    redemption_code = Column(String, unique=True, nullable=False, index=True)
    used_at = Column(DateTime(timezone=True), nullable=True)  # write-once
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class TicketWaiver(Base):
    __tablename__ = "ticket_waivers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    org_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    order_id = Column(UUID(as_uuid=True), ForeignKey("orders.id"), unique=True, nullable=False)
    customer_email = Column(String, nullable=False)
    customer_name = Column(String, nullable=True)
    waiver_text = Column(Text, nullable=False)
    accepted_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class CheckIn(Base):
    __tablename__ = "check_ins"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    org_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    attraction_id = Column(UUID(as_uuid=True), ForeignKey("attractions.id"), nullable=False, index=True)
    ticket_id = Column(UUID(as_uuid=True), ForeignKey("tickets.id"), unique=True, nullable=False)
    station_id = Column(String, nullable=True)
    method = Column(String, nullable=False, server_default="scan")  # scan, manual
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

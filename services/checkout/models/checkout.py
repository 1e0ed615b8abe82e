"""Pydantic models for the storefront checkout API"""
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel
from typing import Optional, List
from uuid import UUID
from datetime import datetime


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CartItemRequest(ApiModel):
    ticket_type_id: UUID
    quantity: int = Field(gt=0, le=100)


class CheckoutRequest(ApiModel):
    items: List[CartItemRequest] = Field(min_length=1)
    customer_email: EmailStr
    customer_name: Optional[str] = Field(default=None, max_length=200)
    customer_phone: Optional[str] = Field(default=None, max_length=40)
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CheckoutSessionResponse(ApiModel):
    checkout_url: str
    session_id: str
    order_id: UUID
    order_number: str
    total: int
    platform_fee: int
    currency: str
    expires_at: Optional[datetime] = None


class TicketResponse(ApiModel):
    id: UUID
    ticket_number: str
    ticket_type_id: UUID
    redemption_code: str
    used_at: Optional[datetime] = None


class OrderResponse(ApiModel):
    id: UUID
    order_number: str
    status: str
    customer_email: str
    subtotal: int
    total: int
    currency: str
    completed_at: Optional[datetime] = None
    tickets: List[TicketResponse] = []


class VerifyResponse(ApiModel):
    success: bool
    order: OrderResponse


class OrderStatusResponse(ApiModel):
    order_id: UUID
    order_number: str
    status: str
    total: int
    ticket_count: int


class CancelRequest(ApiModel):
    payment_reference_id: str = Field(min_length=1)


class CancelResponse(ApiModel):
    success: bool
    message: str

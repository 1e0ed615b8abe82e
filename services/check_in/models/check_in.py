"""Pydantic models for gate check-in"""
from pydantic import Field
from typing import Optional
from uuid import UUID
from datetime import datetime

from services.checkout.models.checkout import ApiModel


class ScanRequest(ApiModel):
    code: str = Field(min_length=1, max_length=64)
    station_id: Optional[str] = None
    method: str = Field(default="scan", pattern="^(scan|manual)$")


class ScannedTicket(ApiModel):
    id: UUID
    ticket_number: str
    ticket_type_name: str
    order_number: str
    customer_name: Optional[str] = None
    used_at: Optional[datetime] = None


class ScanResponse(ApiModel):
    success: bool
    ticket: Optional[ScannedTicket] = None
    error: Optional[str] = None
    message: Optional[str] = None
    used_at: Optional[datetime] = None
    checked_in_count: Optional[int] = None
    total_tickets: Optional[int] = None


class ValidateResponse(ApiModel):
    valid: bool
    ticket: Optional[ScannedTicket] = None
    error: Optional[str] = None
    used_at: Optional[datetime] = None

"""Gate check-in routes"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict
from uuid import UUID

from shared.database.session import get_db
from shared.utils.rate_limiter import limiter, RATE_LIMITS
from services.check_in.models.check_in import ScanRequest, ScanResponse, ScannedTicket, ValidateResponse
from services.check_in.services.check_in_service import CheckInService

router = APIRouter()


def scanned_ticket(found: Dict) -> ScannedTicket:
    ticket = found["ticket"]
    return ScannedTicket(
        id=ticket.id,
        ticket_number=ticket.ticket_number,
        ticket_type_name=found["ticket_type_name"],
        order_number=found["order_number"],
        customer_name=found["customer_name"],
        used_at=ticket.used_at,
    )


@router.post("/{attraction_id}/check-in/scan", response_model=ScanResponse, response_model_exclude_none=True)
@limiter.limit(RATE_LIMITS["check_in"])
async def scan_ticket(
    request: Request,  # required by the rate limiter
    attraction_id: UUID,
    scan: ScanRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Redeem a ticket.

    A ticket that was already used answers 200 with success=false and
    error=TICKET_ALREADY_USED; duplicate scans are routine at a gate.
    """
    result = await CheckInService().redeem(
        db, attraction_id, scan.code, station_id=scan.station_id, method=scan.method
    )
    return ScanResponse(
        success=result["success"],
        ticket=scanned_ticket(result),
        error=result.get("error"),
        message=result.get("message"),
        used_at=result.get("used_at"),
        checked_in_count=result.get("checked_in_count"),
        total_tickets=result.get("total_tickets"),
    )


@router.post("/{attraction_id}/check-in/validate", response_model=ValidateResponse, response_model_exclude_none=True)
@limiter.limit(RATE_LIMITS["check_in"])
async def validate_ticket(
    request: Request,
    attraction_id: UUID,
    scan: ScanRequest,
    db: AsyncSession = Depends(get_db),
):
    """Look a ticket up without redeeming it"""
    result = await CheckInService().validate(db, attraction_id, scan.code)
    return ValidateResponse(
        valid=result["valid"],
        ticket=scanned_ticket(result),
        error=result.get("error"),
        used_at=result.get("used_at"),
    )

import asyncio
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from shared.database.models import CheckIn
from shared.errors import TicketNotFoundError
from services.check_in.services.check_in_service import CheckInService, normalize_code


@pytest.fixture
async def tickets(service, db, seed, paid_order):
    session, _ = await paid_order(quantity=2)
    order = await service.verify_session(db, seed.slug, session["session_id"])
    return order.tickets


def test_normalize_code():
    assert normalize_code("  a1b2c3d4e5f6 ") == "A1B2C3D4E5F6"


async def test_redeem_once(db, seed, tickets):
    result = await CheckInService().redeem(db, seed.attraction_id, tickets[0].redemption_code, station_id="gate-1")

    assert result["success"] is True
    assert result["ticket"].used_at is not None
    assert result["ticket_type_name"] == "General Admission"
    assert result["customer_name"] == "Ada Buyer"
    assert result["checked_in_count"] == 1
    assert result["total_tickets"] == 2


async def test_second_scan_reports_original_time(db, seed, tickets):
    service = CheckInService()
    first = await service.redeem(db, seed.attraction_id, tickets[0].redemption_code)
    second = await service.redeem(db, seed.attraction_id, tickets[0].redemption_code.lower())

    assert second["success"] is False
    assert second["error"] == "TICKET_ALREADY_USED"
    assert second["used_at"] == first["ticket"].used_at


async def test_concurrent_scans_admit_one(db, seed, tickets, session_maker):
    code = tickets[1].redemption_code

    async def scan(station):
        async with session_maker() as own_db:
            return await CheckInService().redeem(own_db, seed.attraction_id, code, station_id=station)

    results = await asyncio.gather(*(scan(f"gate-{i}") for i in range(5)))

    winners = [r for r in results if r["success"]]
    losers = [r for r in results if not r["success"]]
    assert len(winners) == 1
    assert len(losers) == 4
    assert {r["used_at"] for r in losers} == {winners[0]["ticket"].used_at}

    count = await db.execute(select(func.count()).select_from(CheckIn))
    assert count.scalar_one() == 1


async def test_ticket_from_other_attraction(db, seed, tickets):
    with pytest.raises(TicketNotFoundError):
        await CheckInService().redeem(db, uuid4(), tickets[0].redemption_code)


async def test_unknown_code(db, seed, tickets):
    with pytest.raises(TicketNotFoundError):
        await CheckInService().redeem(db, seed.attraction_id, "FFFFFFFFFFFF")


async def test_validate_does_not_redeem(db, seed, tickets):
    service = CheckInService()
    preview = await service.validate(db, seed.attraction_id, tickets[0].redemption_code)
    assert preview["valid"] is True

    redeemed = await service.redeem(db, seed.attraction_id, tickets[0].redemption_code)
    assert redeemed["success"] is True

    preview = await service.validate(db, seed.attraction_id, tickets[0].redemption_code)
    assert preview["valid"] is False
    assert preview["error"] == "TICKET_ALREADY_USED"

import asyncio

import pytest
from sqlalchemy import delete, func, select

from shared.database.models import Ticket as TicketRow, TicketWaiver
from shared.errors import OrderNotFoundError
from services.checkout.models.order import OrderStatus
from services.checkout.services.order_repository import CartLine, CustomerInfo, OrderRepository
from services.checkout.services.ticket_issuer import TicketIssuer, plan_tickets, ticket_number


@pytest.fixture
def repo():
    return OrderRepository()


@pytest.fixture
def issuer(repo):
    return TicketIssuer(repo)


async def processing_order(repo, db, seed, lines=None):
    priced = await repo.price_cart(db, seed.attraction_id, lines or [CartLine(seed.general_id, 3)])
    order = await repo.create_order(
        db,
        org_id=seed.org_id,
        attraction_id=seed.attraction_id,
        customer=CustomerInfo(email="buyer@example.com", name="Ada Buyer"),
        lines=priced,
        platform_fee=0,
        currency="USD",
    )
    result = await repo.open_session(db, order.id, f"sess_{order.id.hex[:8]}")
    return result.order


async def ticket_count(db, order_id):
    result = await db.execute(select(func.count()).select_from(TicketRow).where(TicketRow.order_id == order_id))
    return result.scalar_one()


def test_ticket_numbers_span_items(seed):
    assert ticket_number("AB12-20261017-0001", 7) == "AB12-20261017-0001-007"


async def test_plan_tickets_numbers_across_items(repo, db, seed):
    order = await processing_order(
        repo, db, seed, [CartLine(seed.general_id, 1), CartLine(seed.vip_id, 2)]
    )
    planned = plan_tickets(order)
    assert [p["ticket_number"] for p in planned] == [
        f"{order.order_number}-001",
        f"{order.order_number}-002",
        f"{order.order_number}-003",
    ]
    assert {p["ticket_type_id"] for p in planned} == {seed.general_id, seed.vip_id}


async def test_complete_issues_one_ticket_per_unit(repo, issuer, db, seed):
    order = await processing_order(repo, db, seed)

    completed = await issuer.complete(db, seed.org_id, order.id)

    assert completed.status == OrderStatus.COMPLETED
    assert len(completed.tickets) == 3
    assert len({t.redemption_code for t in completed.tickets}) == 3
    assert all(t.used_at is None for t in completed.tickets)
    assert all(t.attraction_id == seed.attraction_id for t in completed.tickets)


async def test_complete_records_waiver_once(repo, issuer, db, seed):
    order = await processing_order(repo, db, seed)
    await issuer.complete(db, seed.org_id, order.id)
    await issuer.complete(db, seed.org_id, order.id)

    result = await db.execute(select(TicketWaiver).where(TicketWaiver.order_id == order.id))
    waivers = result.scalars().all()
    assert len(waivers) == 1
    assert waivers[0].waiver_text == "Enter at your own risk."
    assert waivers[0].customer_email == "buyer@example.com"


async def test_repeat_completion_is_a_no_op(repo, issuer, db, seed):
    order = await processing_order(repo, db, seed)
    first = await issuer.complete(db, seed.org_id, order.id)
    second = await issuer.complete(db, seed.org_id, order.id)

    assert second.status == OrderStatus.COMPLETED
    assert [t.id for t in second.tickets] == [t.id for t in first.tickets]
    assert await ticket_count(db, order.id) == 3


async def test_pending_order_is_not_completed(repo, issuer, db, seed):
    priced = await repo.price_cart(db, seed.attraction_id, [CartLine(seed.general_id, 1)])
    order = await repo.create_order(
        db, seed.org_id, seed.attraction_id, CustomerInfo(email="buyer@example.com"), priced, 0, "USD"
    )
    from shared.errors import InvalidOrderStatusError

    with pytest.raises(InvalidOrderStatusError):
        await issuer.complete(db, seed.org_id, order.id)
    assert await ticket_count(db, order.id) == 0


async def test_canceled_order_gets_no_tickets(repo, issuer, db, seed):
    order = await processing_order(repo, db, seed)
    await repo.transition(db, order.id, OrderStatus.CANCELED)

    result = await issuer.complete(db, seed.org_id, order.id)
    assert result.status == OrderStatus.CANCELED
    assert await ticket_count(db, order.id) == 0


async def test_unknown_order(issuer, db, seed):
    from uuid import uuid4

    with pytest.raises(OrderNotFoundError):
        await issuer.complete(db, seed.org_id, uuid4())


async def test_missing_tickets_are_repaired(repo, issuer, db, seed):
    order = await processing_order(repo, db, seed)
    completed = await issuer.complete(db, seed.org_id, order.id)
    kept = completed.tickets[0]

    await db.execute(delete(TicketRow).where(TicketRow.order_id == order.id, TicketRow.id != kept.id))
    await db.commit()

    repaired = await issuer.ensure_tickets(db, completed)
    assert [t.ticket_number for t in repaired.tickets] == [
        f"{order.order_number}-001",
        f"{order.order_number}-002",
        f"{order.order_number}-003",
    ]
    assert repaired.tickets[0].redemption_code == kept.redemption_code


async def test_concurrent_completion_issues_once(repo, db, seed, session_maker):
    order = await processing_order(repo, db, seed)

    async def complete():
        async with session_maker() as session:
            return await TicketIssuer(OrderRepository()).complete(session, seed.org_id, order.id)

    results = await asyncio.gather(*(complete() for _ in range(4)))

    assert all(r.status == OrderStatus.COMPLETED for r in results)
    assert all(len(r.tickets) == 3 for r in results)
    assert len({tuple(t.id for t in r.tickets) for r in results}) == 1
    assert await ticket_count(db, order.id) == 3


async def test_redemption_code_collision_is_retried(repo, issuer, db, seed, monkeypatch):
    from services.checkout.services import ticket_issuer

    first = await issuer.complete(db, seed.org_id, (await processing_order(repo, db, seed)).id)
    taken = first.tickets[0].redemption_code
    order = await processing_order(repo, db, seed)

    issued = []
    colliding = [taken]
    fresh_code = ticket_issuer.generate_redemption_code

    def next_code():
        code = colliding.pop() if colliding else fresh_code()
        issued.append(code)
        return code

    flips = []
    transition = repo.transition

    async def recording_transition(*args, **kwargs):
        result = await transition(*args, **kwargs)
        flips.append(result.changed)
        return result

    monkeypatch.setattr(ticket_issuer, "generate_redemption_code", next_code)
    monkeypatch.setattr(repo, "transition", recording_transition)

    completed = await issuer.complete(db, seed.org_id, order.id)

    # The colliding attempt rolled back its flip, so the retry flips again
    assert flips == [True, True]
    assert len(issued) == 6
    assert completed.status == OrderStatus.COMPLETED
    assert await ticket_count(db, order.id) == 3
    codes = {t.redemption_code for t in completed.tickets}
    assert len(codes) == 3
    assert taken not in codes

    result = await db.execute(select(func.count()).select_from(TicketWaiver).where(TicketWaiver.order_id == order.id))
    assert result.scalar_one() == 1

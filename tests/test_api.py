import pytest
from httpx import ASGITransport, AsyncClient

from main import app
from services.checkout.routes.checkout import get_checkout_service
from services.checkout.services.checkout_service import CheckoutService
from services.checkout.services.fee_calculator import FeeCalculator, TierConfigCache


@pytest.fixture
async def client(session_maker, seed, gateway):
    fee_calculator = FeeCalculator(TierConfigCache())
    app.dependency_overrides[get_checkout_service] = lambda: CheckoutService(
        gateway=gateway, fee_calculator=fee_calculator
    )
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def checkout_body(seed, quantity=2):
    return {
        "items": [{"ticketTypeId": str(seed.general_id), "quantity": quantity}],
        "customerEmail": "buyer@example.com",
        "customerName": "Ada Buyer",
    }


async def open_checkout(client, seed, quantity=2):
    response = await client.post(f"/storefronts/{seed.slug}/checkout", json=checkout_body(seed, quantity))
    assert response.status_code == 200, response.text
    return response.json()


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


async def test_checkout_and_verify(client, gateway, seed):
    session = await open_checkout(client, seed)
    assert session["total"] == 4000
    assert session["platformFee"] == 230
    assert session["checkoutUrl"].endswith(session["sessionId"])

    gateway.mark_paid(session["sessionId"])
    response = await client.get(f"/storefronts/{seed.slug}/checkout/verify", params={"session": session["sessionId"]})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["order"]["status"] == "completed"
    assert len(body["order"]["tickets"]) == 2
    assert body["order"]["tickets"][0]["redemptionCode"]


async def test_verify_requires_session(client, seed):
    response = await client.get(f"/storefronts/{seed.slug}/checkout/verify")
    assert response.status_code == 400


async def test_verify_before_payment(client, seed):
    session = await open_checkout(client, seed)
    response = await client.post(
        f"/storefronts/{seed.slug}/checkout/verify", params={"session": session["sessionId"]}
    )
    assert response.status_code == 402
    assert response.json()["error"] == "PAYMENT_NOT_COMPLETE"


async def test_unknown_storefront(client, seed):
    response = await client.post("/storefronts/nowhere/checkout", json=checkout_body(seed))
    assert response.status_code == 404
    assert response.json() == {"error": "ATTRACTION_NOT_FOUND", "detail": "Storefront not found"}


async def test_invalid_quantity_is_rejected(client, seed):
    response = await client.post(f"/storefronts/{seed.slug}/checkout", json=checkout_body(seed, quantity=0))
    assert response.status_code == 422


async def test_max_quantity(client, seed):
    response = await client.post(f"/storefronts/{seed.slug}/checkout", json=checkout_body(seed, quantity=11))
    assert response.status_code == 400
    assert response.json()["error"] == "MAX_QUANTITY_EXCEEDED"


async def test_gateway_failure_is_502(client, gateway, seed):
    gateway.configure(create_error=RuntimeError("gateway down"))
    response = await client.post(f"/storefronts/{seed.slug}/checkout", json=checkout_body(seed))
    assert response.status_code == 502
    assert response.json()["error"] == "PAYMENT_INIT_FAILED"


async def test_status_and_cancel(client, gateway, seed):
    session = await open_checkout(client, seed)

    response = await client.get(f"/storefronts/{seed.slug}/checkout/status/{session['orderId']}")
    assert response.status_code == 200
    assert response.json()["status"] == "processing"
    assert response.json()["ticketCount"] == 0

    response = await client.post(
        f"/storefronts/{seed.slug}/checkout/cancel", json={"paymentReferenceId": session["sessionId"]}
    )
    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Checkout canceled"}

    response = await client.get(f"/storefronts/{seed.slug}/checkout/status/{session['orderId']}")
    assert response.json()["status"] == "canceled"


async def test_cancel_completed_order_conflicts(client, gateway, seed):
    session = await open_checkout(client, seed)
    reference = gateway.mark_paid(session["sessionId"])
    await client.get(f"/storefronts/{seed.slug}/checkout/verify", params={"session": session["sessionId"]})

    response = await client.post(
        f"/storefronts/{seed.slug}/checkout/cancel", json={"paymentReferenceId": reference}
    )
    assert response.status_code == 409
    assert response.json()["error"] == "ORDER_ALREADY_COMPLETED"


async def test_scan_twice(client, gateway, seed):
    session = await open_checkout(client, seed, quantity=1)
    gateway.mark_paid(session["sessionId"])
    verified = await client.get(f"/storefronts/{seed.slug}/checkout/verify", params={"session": session["sessionId"]})
    code = verified.json()["order"]["tickets"][0]["redemptionCode"]
    url = f"/attractions/{seed.attraction_id}/check-in/scan"

    first = await client.post(url, json={"code": code, "stationId": "gate-1"})
    assert first.status_code == 200
    assert first.json()["success"] is True
    assert first.json()["checkedInCount"] == 1
    assert first.json()["totalTickets"] == 1

    second = await client.post(url, json={"code": code, "stationId": "gate-2"})
    assert second.status_code == 200
    body = second.json()
    assert body["success"] is False
    assert body["error"] == "TICKET_ALREADY_USED"
    assert body["usedAt"] == first.json()["ticket"]["usedAt"]


async def test_scan_unknown_ticket(client, seed):
    response = await client.post(
        f"/attractions/{seed.attraction_id}/check-in/scan", json={"code": "FFFFFFFFFFFF"}
    )
    assert response.status_code == 404
    assert response.json()["error"] == "TICKET_NOT_FOUND"


async def test_webhook_completes_order(client, gateway, seed):
    session = await open_checkout(client, seed)
    reference = gateway.mark_paid(session["sessionId"])
    payload = {"type": "payment", "data": {"id": reference}, "user_id": 1001}

    rejected = await client.post("/webhooks/mercadopago", json=payload, headers={"x-signature": "forged"})
    assert rejected.status_code == 401

    accepted = await client.post("/webhooks/mercadopago", json=payload, headers={"x-signature": "valid"})
    assert accepted.status_code == 200
    assert accepted.json() == {"status": "completed"}

    response = await client.get(f"/storefronts/{seed.slug}/checkout/status/{reference}")
    assert response.json()["ticketCount"] == 2


async def test_webhook_ignores_other_topics(client, seed):
    response = await client.post("/webhooks/mercadopago", json={"type": "merchant_order", "data": {"id": "1"}})
    assert response.status_code == 200
    assert response.json() == {"status": "ignored"}

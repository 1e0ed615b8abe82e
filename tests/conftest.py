import asyncio
import os
from types import SimpleNamespace
from uuid import uuid4

# Settings are read at import time
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["RATE_LIMIT_STORAGE_URI"] = "memory://"
os.environ["STOREFRONT_CACHE_TTL_SECONDS"] = "0"
os.environ["APP_ENV"] = "development"
os.environ["CURRENCY"] = "USD"

import pytest
from decimal import Decimal

from shared.database import connection
from shared.database.models import (
    Attraction,
    Organization,
    PaymentAccount,
    StorefrontDomain,
    SubscriptionTierConfig,
    TicketType,
)
from services.checkout.gateway.factory import reset_gateway, set_gateway
from services.checkout.gateway.port import (
    CheckoutSession,
    GatewayNotification,
    PaymentGateway,
    PaymentStatus,
    SessionStatus,
)
from services.checkout.models.checkout import CartItemRequest, CheckoutRequest
from services.checkout.services.checkout_service import CheckoutService
from services.checkout.services.fee_calculator import FeeCalculator, TierConfigCache


class FakeGateway(PaymentGateway):
    """In-memory gateway; sessions start unpaid and tests settle them explicitly"""

    def __init__(self):
        self.calls = []
        self.requests = {}
        self.sessions = {}
        self.payment_orders = {}
        self.create_error = None
        self.retrieve_error = None
        self.cancel_error = None

    def configure(self, create_error=None, retrieve_error=None, cancel_error=None):
        self.create_error = create_error
        self.retrieve_error = retrieve_error
        self.cancel_error = cancel_error

    def settle(self, session_id, payment_status, reference=None, gateway_status=None):
        self.sessions[session_id] = SessionStatus(
            session_id=session_id,
            payment_status=payment_status,
            payment_reference=reference,
            gateway_status=gateway_status,
        )
        if reference:
            self.payment_orders[reference] = self.requests[session_id].order_id

    def mark_paid(self, session_id, reference=None):
        reference = reference or f"pay_{uuid4().hex[:10]}"
        self.settle(session_id, PaymentStatus.PAID, reference, "approved")
        return reference

    def count(self, method):
        return sum(1 for call in self.calls if call[0] == method)

    async def create_session(self, account, request):
        self.calls.append(("create_session", request))
        await asyncio.sleep(0)
        if self.create_error:
            raise self.create_error
        session_id = f"sess_{uuid4().hex[:12]}"
        self.requests[session_id] = request
        self.sessions[session_id] = SessionStatus(session_id=session_id, payment_status=PaymentStatus.UNPAID)
        return CheckoutSession(
            session_id=session_id,
            checkout_url=f"https://pay.example.test/{session_id}",
            expires_at=request.expires_at,
        )

    async def retrieve_session(self, account, session_id, order_id):
        self.calls.append(("retrieve_session", session_id))
        await asyncio.sleep(0)
        if self.retrieve_error:
            raise self.retrieve_error
        return self.sessions[session_id]

    async def cancel_charge(self, account, payment_reference):
        self.calls.append(("cancel_charge", payment_reference))
        if self.cancel_error:
            raise self.cancel_error

    def parse_notification(self, body, query_params):
        if body.get("type") != "payment":
            return None
        return GatewayNotification(
            resource_id=str(body["data"]["id"]),
            topic="payment",
            account_id=str(body["user_id"]) if body.get("user_id") else None,
        )

    def verify_notification(self, notification, headers):
        return headers.get("x-signature") == "valid"

    async def resolve_order_id(self, account, resource_id):
        self.calls.append(("resolve_order_id", resource_id))
        return self.payment_orders.get(resource_id)


@pytest.fixture
async def session_maker(tmp_path):
    await connection.init_db(f"sqlite:///{tmp_path / 'checkout.db'}", create_tables=True)
    yield connection.async_session_maker
    await connection.close_db()


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
async def seed(session_maker):
    org_id = uuid4()
    attraction_id = uuid4()
    general_id = uuid4()
    vip_id = uuid4()
    async with session_maker() as session:
        session.add(Organization(id=org_id, name="Nightmare Productions", subscription_tier="free"))
        session.add_all([
            SubscriptionTierConfig(tier="free", transaction_fee_percentage=Decimal("5.00"), transaction_fee_fixed_cents=30),
            SubscriptionTierConfig(tier="pro", transaction_fee_percentage=Decimal("3.00"), transaction_fee_fixed_cents=30),
        ])
        await session.flush()
        session.add(Attraction(
            id=attraction_id,
            org_id=org_id,
            name="Haunted Manor",
            slug="haunted-manor",
            status="active",
            requires_waiver=True,
            waiver_text="Enter at your own risk.",
        ))
        await session.flush()
        session.add(StorefrontDomain(attraction_id=attraction_id, domain="tickets.hauntedmanor.com", is_verified=True))
        session.add(PaymentAccount(
            org_id=org_id,
            provider_account_id="1001",
            access_token="APP_USR-seller-token",
            status="active",
            charges_enabled=True,
        ))
        session.add_all([
            TicketType(
                id=general_id, org_id=org_id, attraction_id=attraction_id, name="General Admission",
                price=2000, min_per_order=1, max_per_order=10,
            ),
            TicketType(
                id=vip_id, org_id=org_id, attraction_id=attraction_id, name="VIP Fast Pass",
                price=3500, min_per_order=2, max_per_order=4, capacity=4,
            ),
        ])
        await session.commit()
    return SimpleNamespace(
        org_id=org_id,
        attraction_id=attraction_id,
        general_id=general_id,
        vip_id=vip_id,
        slug="haunted-manor",
        domain="tickets.hauntedmanor.com",
    )


@pytest.fixture
def gateway():
    fake = FakeGateway()
    set_gateway(fake)
    yield fake
    reset_gateway()


@pytest.fixture
def service(gateway):
    return CheckoutService(gateway=gateway, fee_calculator=FeeCalculator(TierConfigCache(ttl_seconds=300)))


@pytest.fixture
def cart(seed):
    def build(quantity=2, ticket_type_id=None, email="buyer@example.com"):
        return CheckoutRequest(
            items=[CartItemRequest(ticket_type_id=ticket_type_id or seed.general_id, quantity=quantity)],
            customer_email=email,
            customer_name="Ada Buyer",
        )
    return build


@pytest.fixture
def paid_order(service, gateway, db, seed, cart):
    """Open a session for two general tickets and mark it paid at the gateway"""
    async def build(quantity=2):
        session = await service.create_session(db, seed.slug, cart(quantity))
        reference = gateway.mark_paid(session["session_id"])
        return session, reference
    return build

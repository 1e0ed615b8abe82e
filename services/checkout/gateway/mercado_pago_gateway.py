"""Mercado Pago marketplace adapter.

A checkout session is a Checkout Pro preference created with the seller's
access token; ``marketplace_fee`` carries the platform fee and
``external_reference`` carries the order id so payments can be matched back.
"""
import asyncio
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Mapping, Optional

import mercadopago
import requests
from mercadopago.config import RequestOptions

from app.core.config import settings
from shared.utils.retry import retry_decorator
from services.checkout.gateway.port import (
    CheckoutSession,
    ConnectedAccount,
    GatewayError,
    GatewayNotification,
    GatewayUnavailableError,
    PaymentGateway,
    PaymentStatus,
    SessionRequest,
    SessionStatus,
)

logger = logging.getLogger(__name__)

PAYMENT_STATUS_MAP = {
    "approved": PaymentStatus.PAID,
    "pending": PaymentStatus.UNPAID,
    "in_process": PaymentStatus.UNPAID,
    "in_mediation": PaymentStatus.UNPAID,
    "authorized": PaymentStatus.UNPAID,
    # The buyer can retry another card on the same preference
    "rejected": PaymentStatus.UNPAID,
    "cancelled": PaymentStatus.FAILED,
    "refunded": PaymentStatus.FAILED,
    "charged_back": PaymentStatus.FAILED,
}


def to_amount(cents: int) -> float:
    return float(Decimal(cents) / Decimal(100))


def map_payment_status(gateway_status: Optional[str]) -> PaymentStatus:
    status = PAYMENT_STATUS_MAP.get(gateway_status or "")
    if status is None:
        logger.warning(f"Unrecognized Mercado Pago payment status '{gateway_status}', treating as not paid")
        return PaymentStatus.UNKNOWN
    return status


def parse_signature_header(signature: str) -> Dict[str, str]:
    """'ts=1742505638683,v1=ced36a...' -> {'ts': ..., 'v1': ...}"""
    parts = {}
    for part in signature.split(","):
        key_value = part.split("=", 1)
        if len(key_value) == 2:
            parts[key_value[0].strip()] = key_value[1].strip()
    return parts


class MercadoPagoGateway(PaymentGateway):
    """Payment gateway backed by the Mercado Pago SDK"""

    def __init__(
        self,
        environment: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        notification_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.environment = environment or settings.MERCADOPAGO_ENVIRONMENT
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.MERCADOPAGO_WEBHOOK_SECRET
        self.notification_url = notification_url or f"{settings.API_BASE_URL}/webhooks/mercadopago"
        self.timeout = timeout or settings.GATEWAY_TIMEOUT_SECONDS

    def _sdk(self, account: ConnectedAccount) -> mercadopago.SDK:
        if not account.access_token:
            raise GatewayError(f"No access token for seller account {account.provider_account_id}")
        return mercadopago.SDK(
            account.access_token,
            request_options=RequestOptions(connection_timeout=self.timeout, max_retries=0),
        )

    async def _call(self, func, *args) -> dict:
        """Run a blocking SDK call off the event loop and normalize transport errors"""
        try:
            return await asyncio.to_thread(func, *args)
        except requests.exceptions.RequestException as e:
            raise GatewayUnavailableError(f"Mercado Pago unreachable: {type(e).__name__}: {e}") from e

    @staticmethod
    def _check(response: dict, expected: tuple, action: str) -> dict:
        status = response.get("status")
        if status in expected:
            return response.get("response") or {}
        body = response.get("response") or {}
        message = body.get("message") if isinstance(body, dict) else None
        if status is not None and status >= 500:
            raise GatewayUnavailableError(f"Mercado Pago {action} failed with {status}: {message}", status)
        raise GatewayError(f"Mercado Pago {action} failed with {status}: {message}", status)

    def build_preference(self, request: SessionRequest) -> dict:
        preference = {
            "items": [
                {
                    "id": item.reference,
                    "title": item.title,
                    "description": item.description or "",
                    "quantity": item.quantity,
                    "currency_id": request.currency,
                    "unit_price": to_amount(item.unit_amount),
                }
                for item in request.line_items
            ],
            "payer": {"email": request.customer_email},
            "back_urls": {
                "success": request.success_url,
                "pending": request.success_url,
                "failure": request.cancel_url,
            },
            "external_reference": request.order_id,
            "marketplace_fee": to_amount(request.application_fee),
            "metadata": {
                "order_id": request.order_id,
                "order_number": request.order_number,
                "org_id": request.org_id,
                "attraction_id": request.attraction_id,
                **request.metadata,
            },
            "notification_url": self.notification_url,
            "statement_descriptor": settings.MERCADOPAGO_STATEMENT_DESCRIPTOR,
            "expires": True,
            "expiration_date_from": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "expiration_date_to": request.expires_at.isoformat(timespec="milliseconds"),
            "binary_mode": False,
        }
        if request.customer_name:
            name_parts = request.customer_name.strip().split(maxsplit=1)
            preference["payer"]["name"] = name_parts[0]
            if len(name_parts) == 2:
                preference["payer"]["surname"] = name_parts[1]
        # auto_return is rejected for non-https back urls
        if request.success_url.startswith("https://"):
            preference["auto_return"] = "approved"
        return preference

    async def create_session(self, account: ConnectedAccount, request: SessionRequest) -> CheckoutSession:
        sdk = self._sdk(account)
        response = await self._call(sdk.preference().create, self.build_preference(request))
        preference = self._check(response, (200, 201), "preference create")

        if self.environment == "sandbox":
            checkout_url = preference.get("sandbox_init_point") or preference.get("init_point")
        else:
            checkout_url = preference.get("init_point")
        if not preference.get("id") or not checkout_url:
            raise GatewayError(f"Preference response without id/init_point for order {request.order_id}")

        logger.info(
            f"Mercado Pago preference {preference['id']} created for order {request.order_number} "
            f"(seller {account.provider_account_id}, fee {request.application_fee})"
        )
        return CheckoutSession(
            session_id=preference["id"],
            checkout_url=checkout_url,
            expires_at=request.expires_at,
        )

    @retry_decorator(max_retries=2, initial_delay=0.5, max_delay=4.0, exceptions=(GatewayUnavailableError,))
    async def retrieve_session(
        self, account: ConnectedAccount, session_id: str, order_id: str
    ) -> SessionStatus:
        sdk = self._sdk(account)
        preference = self._check(
            await self._call(sdk.preference().get, session_id), (200,), "preference get"
        )
        payments = self._check(
            await self._call(
                sdk.payment().search,
                {"external_reference": order_id, "sort": "date_created", "criteria": "desc"},
            ),
            (200,),
            "payment search",
        ).get("results", [])

        return self.summarize(session_id, preference, payments)

    def summarize(self, session_id: str, preference: dict, payments: List[dict]) -> SessionStatus:
        """Collapse the preference and its payments into one SessionStatus"""
        for payment in payments:
            if payment.get("status") == "approved":
                return SessionStatus(
                    session_id=session_id,
                    payment_status=PaymentStatus.PAID,
                    payment_reference=str(payment["id"]),
                    gateway_status="approved",
                )

        expired = self._is_expired(preference)
        if not payments:
            return SessionStatus(
                session_id=session_id,
                payment_status=PaymentStatus.EXPIRED if expired else PaymentStatus.UNPAID,
            )

        latest = payments[0]
        status = map_payment_status(latest.get("status"))
        if status == PaymentStatus.UNPAID and expired and latest.get("status") == "rejected":
            status = PaymentStatus.EXPIRED
        return SessionStatus(
            session_id=session_id,
            payment_status=status,
            payment_reference=str(latest["id"]) if latest.get("id") is not None else None,
            gateway_status=latest.get("status"),
        )

    @staticmethod
    def _is_expired(preference: dict) -> bool:
        expiration = preference.get("expiration_date_to")
        if not preference.get("expires") or not expiration:
            return False
        try:
            expires_at = datetime.fromisoformat(expiration.replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Unparseable preference expiration '{expiration}'")
            return False
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= datetime.now(timezone.utc)

    async def cancel_charge(self, account: ConnectedAccount, payment_reference: str) -> None:
        sdk = self._sdk(account)
        response = await self._call(sdk.payment().update, payment_reference, {"status": "cancelled"})
        self._check(response, (200,), "payment cancel")
        logger.info(f"Mercado Pago payment {payment_reference} cancelled")

    def parse_notification(
        self, body: Mapping, query_params: Mapping[str, str]
    ) -> Optional[GatewayNotification]:
        # Webhooks send type/data.id; legacy IPN sends topic/id
        topic = body.get("type") or query_params.get("type") or query_params.get("topic")
        if topic != "payment":
            return None
        data = body.get("data") or {}
        resource_id = data.get("id") or query_params.get("data.id") or query_params.get("id")
        if not resource_id:
            return None
        account_id = body.get("user_id")
        return GatewayNotification(
            resource_id=str(resource_id),
            topic=topic,
            account_id=str(account_id) if account_id is not None else None,
        )

    def verify_notification(self, notification: GatewayNotification, headers: Mapping[str, str]) -> bool:
        """HMAC-SHA256 over 'id:{data.id};request-id:{x-request-id};ts:{ts};'"""
        if not self.webhook_secret:
            logger.warning("MERCADOPAGO_WEBHOOK_SECRET not set; accepting unsigned notification")
            return True

        signature = headers.get("x-signature")
        request_id = headers.get("x-request-id")
        if not signature or not request_id:
            logger.warning("Notification without x-signature/x-request-id rejected")
            return False

        parts = parse_signature_header(signature)
        ts, v1 = parts.get("ts"), parts.get("v1")
        if not ts or not v1:
            return False

        manifest = f"id:{notification.resource_id.lower()};request-id:{request_id};ts:{ts};"
        expected = hmac.new(self.webhook_secret.encode(), msg=manifest.encode(), digestmod=hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, v1):
            logger.warning(f"Notification signature mismatch for resource {notification.resource_id}")
            return False
        return True

    async def resolve_order_id(self, account: ConnectedAccount, resource_id: str) -> Optional[str]:
        sdk = self._sdk(account)
        payment = self._check(await self._call(sdk.payment().get, resource_id), (200,), "payment get")
        return payment.get("external_reference")

"""Payment gateway port.

The checkout services only talk to this interface; gateway SDK types never
cross it.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Mapping, Optional, Tuple


class PaymentStatus(str, Enum):
    PAID = "paid"
    UNPAID = "unpaid"
    FAILED = "failed"
    EXPIRED = "expired"
    # Status the adapter could not map; never treated as paid
    UNKNOWN = "unknown"

    @property
    def is_terminal_failure(self) -> bool:
        return self in (PaymentStatus.FAILED, PaymentStatus.EXPIRED)


class GatewayError(Exception):
    """The gateway answered and rejected the request"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GatewayUnavailableError(GatewayError):
    """Network failure or timeout; the outcome is unknown and the call may be retried"""


@dataclass(frozen=True)
class ConnectedAccount:
    """Seller account the payment is collected for"""

    provider_account_id: str
    access_token: Optional[str] = None


@dataclass(frozen=True)
class LineItem:
    reference: str
    title: str
    quantity: int
    unit_amount: int  # cents
    description: Optional[str] = None


@dataclass(frozen=True)
class SessionRequest:
    order_id: str
    order_number: str
    org_id: str
    attraction_id: str
    currency: str
    line_items: Tuple[LineItem, ...]
    total: int
    application_fee: int
    customer_email: str
    success_url: str
    cancel_url: str
    expires_at: datetime
    customer_name: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    checkout_url: str
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class SessionStatus:
    session_id: str
    payment_status: PaymentStatus
    payment_reference: Optional[str] = None
    gateway_status: Optional[str] = None


@dataclass(frozen=True)
class GatewayNotification:
    """Parsed completion signal pushed by the gateway"""

    resource_id: str
    topic: str
    account_id: Optional[str] = None


class PaymentGateway(ABC):
    """Abstract payment gateway interface"""

    @abstractmethod
    async def create_session(self, account: ConnectedAccount, request: SessionRequest) -> CheckoutSession:
        """Open a hosted payment session for one order"""
        ...

    @abstractmethod
    async def retrieve_session(
        self, account: ConnectedAccount, session_id: str, order_id: str
    ) -> SessionStatus:
        """Report whether the session's payment has been confirmed"""
        ...

    @abstractmethod
    async def cancel_charge(self, account: ConnectedAccount, payment_reference: str) -> None:
        """Cancel a pending charge"""
        ...

    @abstractmethod
    def parse_notification(
        self, body: Mapping, query_params: Mapping[str, str]
    ) -> Optional[GatewayNotification]:
        """Extract the resource a webhook refers to; None for topics we ignore"""
        ...

    @abstractmethod
    def verify_notification(
        self, notification: GatewayNotification, headers: Mapping[str, str]
    ) -> bool:
        """Check the webhook signature"""
        ...

    @abstractmethod
    async def resolve_order_id(self, account: ConnectedAccount, resource_id: str) -> Optional[str]:
        """Map a notified resource (payment) back to the order id it was opened for"""
        ...

"""Error codes and exceptions shared by checkout and check-in"""
from enum import Enum
import logging

from fastapi import Request, status
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorCode(Enum):
    ATTRACTION_NOT_FOUND = "ATTRACTION_NOT_FOUND"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    TICKET_NOT_FOUND = "TICKET_NOT_FOUND"

    PAYMENT_NOT_CONFIGURED = "PAYMENT_NOT_CONFIGURED"
    PAYMENT_NOT_ENABLED = "PAYMENT_NOT_ENABLED"

    INVALID_TICKET_TYPES = "INVALID_TICKET_TYPES"
    MIN_QUANTITY_NOT_MET = "MIN_QUANTITY_NOT_MET"
    MAX_QUANTITY_EXCEEDED = "MAX_QUANTITY_EXCEEDED"
    SOLD_OUT = "SOLD_OUT"

    PAYMENT_INIT_FAILED = "PAYMENT_INIT_FAILED"
    PAYMENT_NOT_COMPLETE = "PAYMENT_NOT_COMPLETE"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    SESSION_VERIFICATION_FAILED = "SESSION_VERIFICATION_FAILED"

    ORDER_ALREADY_COMPLETED = "ORDER_ALREADY_COMPLETED"
    INVALID_ORDER_STATUS = "INVALID_ORDER_STATUS"

    # Returned inside a success envelope, never raised
    TICKET_ALREADY_USED = "TICKET_ALREADY_USED"


class CheckoutError(Exception):
    """Base error with a code, a user-safe message and an HTTP status"""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class NotFoundError(CheckoutError):
    status_code = status.HTTP_404_NOT_FOUND


class AttractionNotFoundError(NotFoundError):
    def __init__(self, identifier: str):
        super().__init__(ErrorCode.ATTRACTION_NOT_FOUND, "Storefront not found")
        self.identifier = identifier


class OrderNotFoundError(NotFoundError):
    def __init__(self, reference: str):
        super().__init__(ErrorCode.ORDER_NOT_FOUND, "Order not found")
        self.reference = reference


class TicketNotFoundError(NotFoundError):
    def __init__(self):
        super().__init__(ErrorCode.TICKET_NOT_FOUND, "Ticket not found for this attraction")


class PaymentNotConfiguredError(CheckoutError):
    """Seller has no connected payment account"""

    def __init__(self):
        super().__init__(
            ErrorCode.PAYMENT_NOT_CONFIGURED,
            "Online payments are not set up for this attraction",
        )


class PaymentNotEnabledError(CheckoutError):
    """Seller account exists but cannot take charges yet"""

    def __init__(self):
        super().__init__(
            ErrorCode.PAYMENT_NOT_ENABLED,
            "Online payments are not yet enabled for this attraction",
        )


class InvalidTicketTypesError(CheckoutError):
    def __init__(self, message: str = "One or more ticket types are invalid or unavailable"):
        super().__init__(ErrorCode.INVALID_TICKET_TYPES, message)


class QuantityError(CheckoutError):
    def __init__(self, code: ErrorCode, ticket_type_name: str, limit: int):
        if code == ErrorCode.MIN_QUANTITY_NOT_MET:
            message = f"Minimum {limit} tickets required for {ticket_type_name}"
        else:
            message = f"Maximum {limit} tickets allowed for {ticket_type_name}"
        super().__init__(code, message)
        self.limit = limit


class SoldOutError(CheckoutError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, ticket_type_name: str):
        super().__init__(ErrorCode.SOLD_OUT, f"Not enough availability for {ticket_type_name}")


class PaymentInitFailedError(CheckoutError):
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str = "Could not start the payment. Please try again."):
        super().__init__(ErrorCode.PAYMENT_INIT_FAILED, message)


class PaymentNotCompleteError(CheckoutError):
    """Gateway has not confirmed the payment yet; the caller should poll"""

    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, payment_status: str):
        super().__init__(ErrorCode.PAYMENT_NOT_COMPLETE, f"Payment not completed (status: {payment_status})")
        self.payment_status = payment_status


class PaymentFailedError(CheckoutError):
    """Gateway reported a terminal failure; the order has been canceled"""

    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, payment_status: str):
        super().__init__(ErrorCode.PAYMENT_FAILED, f"Payment {payment_status}; the order was canceled")
        self.payment_status = payment_status


class SessionVerificationFailedError(CheckoutError):
    """Gateway unreachable; the order is untouched and the call can be retried"""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self):
        super().__init__(
            ErrorCode.SESSION_VERIFICATION_FAILED,
            "Could not verify the payment right now. Please try again.",
        )


class OrderAlreadyCompletedError(CheckoutError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self):
        super().__init__(ErrorCode.ORDER_ALREADY_COMPLETED, "Order is already completed")


class InvalidOrderStatusError(CheckoutError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, current: str, target: str):
        super().__init__(ErrorCode.INVALID_ORDER_STATUS, f"Cannot move order from {current} to {target}")
        self.current = current
        self.target = target


def checkout_error_handler(request: Request, exc: CheckoutError) -> JSONResponse:
    """Render CheckoutError with the API error envelope"""
    if exc.status_code >= 500:
        logger.warning(f"{exc.code.value} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code.value, "detail": exc.message},
    )

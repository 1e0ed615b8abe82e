"""Payment gateway factory.

get_gateway() / set_gateway() let tests swap in a fake implementation.
"""
from typing import Optional

from services.checkout.gateway.port import PaymentGateway

_current_gateway: Optional[PaymentGateway] = None


def get_gateway() -> PaymentGateway:
    """Return the active gateway, defaulting to Mercado Pago"""
    global _current_gateway
    if _current_gateway is None:
        from services.checkout.gateway.mercado_pago_gateway import MercadoPagoGateway
        _current_gateway = MercadoPagoGateway()
    return _current_gateway


def set_gateway(gateway: PaymentGateway) -> None:
    global _current_gateway
    _current_gateway = gateway


def reset_gateway() -> None:
    global _current_gateway
    _current_gateway = None

"""
Payments Infrastructure Module

Payment processor gateways for subscription management.
"""

from typing import Optional

from app.config.settings import get_settings
from app.infrastructure.payments.gateway import PaymentGateway
from app.infrastructure.payments.mercadopago_service import MercadoPagoService
from app.infrastructure.payments.stripe_service import StripeService


_gateway_instance: Optional[PaymentGateway] = None


def get_payment_gateway() -> PaymentGateway:
    """Get or create the gateway selected by PAYMENT_PROVIDER."""
    global _gateway_instance

    if _gateway_instance is None:
        if get_settings().payment_provider == "mercadopago":
            _gateway_instance = MercadoPagoService()
        else:
            _gateway_instance = StripeService()

    return _gateway_instance


__all__ = [
    "PaymentGateway",
    "StripeService",
    "MercadoPagoService",
    "get_payment_gateway",
]

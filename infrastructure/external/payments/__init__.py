"""
Factory for payment gateway clients.
"""
from __future__ import annotations

from typing import Optional

from core.settings import PaymentSettings, payment_settings
from application.ports.payment_gateway import PaymentGateway


def get_payment_gateway(provider: Optional[str] = None, settings: Optional[PaymentSettings] = None) -> PaymentGateway:
    settings = settings or payment_settings
    name = (provider or settings.default_provider).lower()
    if name == "stripe":
        from .stripe_client import StripeClient
        return StripeClient(settings)
    raise ValueError(f"Unsupported payment provider: {name}")

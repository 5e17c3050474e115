"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    CreatePaymentIntent,
    CreateRefund,
    PaymentIntent,
    RefundResult,
    WebhookEvent,
)


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for the external payment processor.

    Outbound calls must be bounded by a timeout and keyed by idempotency
    references so they are safe to retry. ``verify_and_parse_event`` must
    reject unsigned or tampered payloads before any ledger mutation.
    """

    provider: str

    async def create_payment_intent(self, req: CreatePaymentIntent) -> PaymentIntent: ...

    async def get_payment_intent(self, intent_id: str) -> PaymentIntent: ...

    async def create_refund(self, req: CreateRefund) -> RefundResult: ...

    def verify_and_parse_event(self, payload: bytes, signature: Optional[str]) -> WebhookEvent: ...

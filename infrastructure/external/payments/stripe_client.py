"""
Stripe PaymentIntents adapter using the official stripe-python SDK.

Notes on SDK usage:
- Module-level helpers (`stripe.PaymentIntent.create`, `stripe.Refund.create`)
  accept an `idempotency_key` kwarg; retries reuse the same key.
- Webhook verification uses `stripe.Webhook.construct_event` with the
  `Stripe-Signature` header and the configured tolerance.
- Amounts are already in minor units; no conversion happens here.
"""
from __future__ import annotations

from typing import Any, Optional

import stripe

from application.dtos.payments import (
    CreatePaymentIntent,
    CreateRefund,
    PaymentIntent,
    RefundResult,
    WebhookEvent,
)
from core.settings import PaymentSettings
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
    PaymentSignatureError,
)
from shared.codes.payment_codes import PaymentCode


def _as_dict(obj: Any) -> dict[str, Any]:
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


class StripeClient(BasePaymentClient):
    provider = "stripe"

    def __init__(self, settings: PaymentSettings):
        super().__init__(
            timeouts=settings.timeouts.model_dump(),
            retry={"max": settings.retry.max, "base": settings.retry.base_backoff},
        )
        if not settings.stripe.secret_key:
            raise RuntimeError("PAYMENT__STRIPE__SECRET_KEY not configured")
        self._webhook_secret = settings.stripe.webhook_secret
        self._tolerance = settings.webhook.tolerance_seconds
        stripe.api_key = settings.stripe.secret_key
        stripe.max_network_retries = 0  # retries are driven by tenacity

    def _translate(self, exc: stripe.StripeError) -> Exception:
        code = getattr(exc, "code", None)
        details = {"http_status": getattr(exc, "http_status", None)}
        if isinstance(exc, stripe.RateLimitError):
            return PaymentRecoverableError(
                str(exc), provider=self.provider, provider_code=code, details=details, code=PaymentCode.RATE_LIMITED,
            )
        if isinstance(exc, (stripe.APIConnectionError, stripe.APIError)):
            return PaymentRecoverableError(str(exc), provider=self.provider, provider_code=code, details=details)
        return PaymentProviderError(
            getattr(exc, "user_message", None) or str(exc),
            provider=self.provider,
            provider_code=code,
            details=details,
        )

    async def _sdk(self, operation: str, fn, *args, **kwargs):
        def _invoke():
            try:
                return fn(*args, **kwargs)
            except stripe.StripeError as exc:
                raise self._translate(exc) from exc

        return await self._call(operation, _invoke)

    def _to_intent(self, pi: Any) -> PaymentIntent:
        data = _as_dict(pi)
        charge = data.get("latest_charge")
        if isinstance(charge, dict):
            charge = charge.get("id")
        return PaymentIntent(
            intent_id=str(data["id"]),
            status=self._map_status(str(data.get("status", ""))),
            provider=self.provider,
            client_secret=data.get("client_secret"),
            amount=data.get("amount"),
            currency=(data.get("currency") or "").upper() or None,
            latest_charge=charge,
        )

    async def create_payment_intent(self, req: CreatePaymentIntent) -> PaymentIntent:  # type: ignore[override]
        pi = await self._sdk(
            "create_payment_intent",
            stripe.PaymentIntent.create,
            amount=req.amount,
            currency=req.currency.lower(),
            metadata=req.metadata,
            description=req.description,
            automatic_payment_methods={"enabled": True},
            idempotency_key=req.idempotency_key,
        )
        intent = self._to_intent(pi)
        self._log("payment_intent_created", intent_id=intent.intent_id, status=intent.status)
        return intent

    async def get_payment_intent(self, intent_id: str) -> PaymentIntent:  # type: ignore[override]
        pi = await self._sdk("get_payment_intent", stripe.PaymentIntent.retrieve, intent_id)
        return self._to_intent(pi)

    async def create_refund(self, req: CreateRefund) -> RefundResult:  # type: ignore[override]
        params: dict[str, Any] = {
            "payment_intent": req.intent_id,
            "metadata": req.metadata,
            "idempotency_key": req.idempotency_key,
        }
        if req.amount is not None:
            params["amount"] = req.amount
        if req.reason:
            params["reason"] = req.reason
        refund = _as_dict(await self._sdk("create_refund", stripe.Refund.create, **params))
        result = RefundResult(
            refund_id=str(refund["id"]),
            status=self._map_status(str(refund.get("status", ""))),
            provider=self.provider,
            amount=refund.get("amount"),
        )
        self._log("refund_created", intent_id=req.intent_id, refund_id=result.refund_id, status=result.status)
        return result

    def verify_and_parse_event(self, payload: bytes, signature: Optional[str]) -> WebhookEvent:  # type: ignore[override]
        if not self._webhook_secret:
            raise PaymentSignatureError("Missing PAYMENT__STRIPE__WEBHOOK_SECRET", provider=self.provider)
        if not signature:
            raise PaymentSignatureError("Missing Stripe-Signature header", provider=self.provider)
        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self._webhook_secret,
                tolerance=self._tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            raise PaymentSignatureError(str(exc), provider=self.provider) from exc
        except ValueError as exc:
            # 载荷不是合法 JSON
            raise PaymentSignatureError(f"Invalid payload: {exc}", provider=self.provider) from exc

        data = _as_dict(event)
        self._log("webhook_verified", event_id=data.get("id"), event_type=data.get("type"))
        return WebhookEvent(
            id=str(data.get("id") or ""),
            type=str(data.get("type") or ""),
            provider=self.provider,
            data=_as_dict(data.get("data") or {}),
            raw_body=payload,
        )

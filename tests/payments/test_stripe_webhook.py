import asyncio
import time

import pytest

stripe = pytest.importorskip("stripe")

from application.dtos.payments import CreatePaymentIntent, CreateRefund
from core.settings import PaymentRetry, PaymentSettings, PaymentTimeouts, StripeSettings
from infrastructure.external.payments import get_payment_gateway
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentRecoverableError,
    PaymentSignatureError,
)
from infrastructure.external.payments.stripe_client import StripeClient
from shared.codes.payment_codes import PaymentCode


def _settings(**overrides):
    values = dict(
        stripe=StripeSettings(secret_key="sk_test_123", webhook_secret="whsec_test"),
        retry=PaymentRetry(max=1, base_backoff=0),
    )
    values.update(overrides)
    return PaymentSettings(**values)


def test_stripe_parse_webhook(monkeypatch):
    seen = {}

    class _FakeWebhook:
        @staticmethod
        def construct_event(payload, sig_header, secret, tolerance=None):
            seen.update(sig_header=sig_header, secret=secret, tolerance=tolerance)
            return {
                "id": "evt_1",
                "type": "payment_intent.succeeded",
                "data": {"object": {"id": "pi_1", "status": "succeeded"}},
            }

    monkeypatch.setattr(stripe, "Webhook", _FakeWebhook)

    gw = get_payment_gateway("stripe", settings=_settings())
    assert isinstance(gw, StripeClient)
    evt = gw.verify_and_parse_event(b"{}", "t=1,v1=abc")
    assert evt.type == "payment_intent.succeeded"
    assert evt.provider == "stripe"
    assert evt.data["object"]["id"] == "pi_1"
    assert seen == {"sig_header": "t=1,v1=abc", "secret": "whsec_test", "tolerance": 300}


def test_stripe_rejects_bad_signature(monkeypatch):
    class _FakeWebhook:
        @staticmethod
        def construct_event(payload, sig_header, secret, tolerance=None):
            raise stripe.SignatureVerificationError("No signatures found", sig_header)

    monkeypatch.setattr(stripe, "Webhook", _FakeWebhook)
    gw = StripeClient(_settings())

    with pytest.raises(PaymentSignatureError):
        gw.verify_and_parse_event(b"{}", "t=1,v1=bad")
    with pytest.raises(PaymentSignatureError):
        gw.verify_and_parse_event(b"{}", None)


def test_stripe_requires_webhook_secret():
    gw = StripeClient(_settings(stripe=StripeSettings(secret_key="sk_test_123")))
    with pytest.raises(PaymentSignatureError):
        gw.verify_and_parse_event(b"{}", "t=1,v1=abc")


def test_stripe_requires_secret_key():
    with pytest.raises(RuntimeError):
        StripeClient(PaymentSettings(stripe=StripeSettings()))


def test_unknown_provider():
    with pytest.raises(ValueError):
        get_payment_gateway("paypal", settings=_settings())


@pytest.mark.asyncio
async def test_create_payment_intent_passes_idempotency_key(monkeypatch):
    captured = {}

    def _create(**kwargs):
        captured.update(kwargs)
        return {"id": "pi_1", "status": "requires_payment_method", "client_secret": "cs_1",
                "amount": kwargs["amount"], "currency": kwargs["currency"]}

    monkeypatch.setattr(stripe.PaymentIntent, "create", _create)
    gw = StripeClient(_settings())

    intent = await gw.create_payment_intent(
        CreatePaymentIntent(amount=1000, currency="usd", idempotency_key="key-1", metadata={"item_id": "i"})
    )

    assert captured["idempotency_key"] == "key-1"
    assert captured["currency"] == "usd"
    assert intent.intent_id == "pi_1"
    assert intent.currency == "USD"
    assert intent.client_secret == "cs_1"


@pytest.mark.asyncio
async def test_connection_errors_are_retried_with_same_key(monkeypatch):
    keys = []

    def _create(**kwargs):
        keys.append(kwargs["idempotency_key"])
        if len(keys) == 1:
            raise stripe.APIConnectionError("connection reset")
        return {"id": "re_1", "status": "succeeded", "amount": kwargs.get("amount")}

    monkeypatch.setattr(stripe.Refund, "create", _create)
    gw = StripeClient(_settings())

    result = await gw.create_refund(CreateRefund(intent_id="pi_1", amount=300, idempotency_key="rk-1"))

    assert result.refund_id == "re_1"
    assert result.status == "succeeded"
    assert keys == ["rk-1", "rk-1"]


@pytest.mark.asyncio
async def test_card_errors_are_not_retried(monkeypatch):
    calls = []

    def _create(**kwargs):
        calls.append(kwargs)
        raise stripe.InvalidRequestError("Charge has already been refunded", param="payment_intent")

    monkeypatch.setattr(stripe.Refund, "create", _create)
    gw = StripeClient(_settings())

    with pytest.raises(PaymentProviderError) as exc:
        await gw.create_refund(CreateRefund(intent_id="pi_1", idempotency_key="rk-2"))
    assert len(calls) == 1
    assert "amount" not in calls[0]
    assert exc.value.code == PaymentCode.PROVIDER_ERROR


@pytest.mark.asyncio
async def test_slow_calls_time_out(monkeypatch):
    def _slow(*args, **kwargs):
        time.sleep(0.3)
        return {"id": "pi_1", "status": "succeeded"}

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", _slow)
    gw = StripeClient(_settings(
        timeouts=PaymentTimeouts(total=0.05),
        retry=PaymentRetry(max=0, base_backoff=0),
    ))

    with pytest.raises(PaymentRecoverableError) as exc:
        await gw.get_payment_intent("pi_1")
    assert exc.value.code == PaymentCode.TIMEOUT
    # 让后台线程结束，避免影响后续测试
    await asyncio.sleep(0.3)

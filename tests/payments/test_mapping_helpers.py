import pytest

from application.dtos.payments import ProcessorEvent, SettlementEventType, WebhookEvent
from domain.payment.exceptions import MalformedEventException
from infrastructure.external.payments.base import BasePaymentClient


class _MapClient(BasePaymentClient):
    provider = "stripe"


def test_provider_status_mapping():
    c = _MapClient()
    assert c._map_status("succeeded") == "succeeded"
    assert c._map_status("processing") == "pending"
    assert c._map_status("requires_action") == "pending"
    assert c._map_status("requires_payment_method") == "failed"
    assert c._map_status("something_new") == "something_new"


def _webhook(event_type, obj):
    return WebhookEvent(id="evt_1", type=event_type, provider="stripe", data={"object": obj})


def test_payment_event_normalisation():
    event = ProcessorEvent.from_webhook(_webhook("payment_intent.payment_failed", {
        "id": "pi_1",
        "last_payment_error": {"message": "Your card was declined."},
        "latest_charge": {"id": "ch_1"},
        "payment_method_types": ["card", "link"],
    }))
    assert event.event_type == SettlementEventType.PAYMENT_FAILED
    assert event.external_ref == "pi_1"
    assert event.details == {
        "failure_reason": "Your card was declined.",
        "charge_id": "ch_1",
        "payment_method": "card",
    }


def test_dispute_event_uses_payment_intent_as_reference():
    event = ProcessorEvent.from_webhook(_webhook("charge.dispute.created", {
        "id": "dp_1",
        "status": "warning_needs_response",
        "reason": "fraudulent",
        "amount": 1000,
        "payment_intent": "pi_1",
    }))
    assert event.event_type == SettlementEventType.DISPUTE_CREATED
    assert event.event_type.is_dispute
    assert event.external_ref == "pi_1"
    assert event.details["dispute_status"] == "needs_response"
    assert event.details["dispute_id"] == "dp_1"


def test_unsupported_event_type_is_none():
    assert ProcessorEvent.from_webhook(_webhook("customer.created", {"id": "cus_1"})) is None


@pytest.mark.parametrize(
    "event_type, obj",
    [
        ("payment_intent.succeeded", {}),
        ("charge.dispute.updated", {"id": "dp_1", "status": "mystery", "payment_intent": "pi_1"}),
        ("charge.dispute.created", {"id": "dp_1", "status": "needs_response", "amount": -5, "payment_intent": "pi_1"}),
        ("charge.dispute.closed", {"id": "dp_1", "status": "won"}),
    ],
)
def test_malformed_events_are_rejected(event_type, obj):
    with pytest.raises(MalformedEventException):
        ProcessorEvent.from_webhook(_webhook(event_type, obj))


def test_payload_round_trip_keeps_details():
    event = ProcessorEvent.from_webhook(_webhook("payment_intent.canceled", {
        "id": "pi_9",
        "cancellation_reason": "abandoned",
    }))
    restored = ProcessorEvent.from_payload(event.to_payload())
    assert restored == event
    assert restored.details["failure_reason"] == "abandoned"

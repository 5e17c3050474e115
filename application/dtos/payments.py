"""
Payment DTOs (Pydantic v2) used at application boundaries.

Gateway-facing requests/results plus the normalised processor event that the
settlement processor consumes.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from domain.payment.exceptions import MalformedEventException
from shared.codes.payment_codes import PROVIDER_DISPUTE_STATUS_TO_INTERNAL, PROVIDER_EVENT_TO_INTERNAL

# Common ISO-4217 currencies (extend as needed)
ISO_4217 = {
    "USD", "EUR", "GBP", "CNY", "JPY", "KRW", "HKD", "AUD", "CAD", "SGD",
}


def _validate_currency(v: str) -> str:
    u = (v or "").upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    if u not in ISO_4217:
        raise ValueError("unsupported currency")
    return u


class CreatePaymentIntent(BaseModel):
    amount: int = Field(gt=0, description="minor currency units")
    currency: str = Field(default="USD")
    metadata: dict[str, str] = Field(default_factory=dict)
    description: Optional[str] = None
    idempotency_key: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _upper_and_validate_currency(cls, v: str) -> str:
        return _validate_currency(v)


class PaymentIntent(BaseModel):
    intent_id: str
    status: str
    provider: str
    client_secret: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    latest_charge: Optional[str] = None


class CreateRefund(BaseModel):
    intent_id: str
    amount: Optional[int] = Field(default=None, gt=0)  # None = full remaining amount at the processor
    reason: Optional[str] = None
    idempotency_key: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class RefundResult(BaseModel):
    refund_id: str
    status: str
    provider: str
    amount: Optional[int] = None


class WebhookEvent(BaseModel):
    id: str
    type: str
    provider: str
    data: dict[str, Any]
    # raw fields for traceability (optional)
    raw_headers: Optional[dict[str, Any]] = None
    raw_body: Optional[bytes] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)


class SettlementEventType(str, Enum):
    PAYMENT_SUCCEEDED = "payment.succeeded"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_CANCELED = "payment.canceled"
    DISPUTE_CREATED = "dispute.created"
    DISPUTE_UPDATED = "dispute.updated"
    DISPUTE_CLOSED = "dispute.closed"

    @property
    def is_dispute(self) -> bool:
        return self.value.startswith("dispute.")


class ProcessorEvent(BaseModel):
    """Provider-neutral notification keyed by (event_type, external_ref, event_id)."""

    event_id: str = Field(min_length=1)
    event_type: SettlementEventType
    external_ref: str = Field(min_length=1)
    provider: str
    provider_event_type: Optional[str] = None
    # Normalised attributes: failure_reason, charge_id, payment_method,
    # dispute_id, dispute_status, dispute_reason, amount
    details: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_webhook(cls, event: WebhookEvent) -> Optional["ProcessorEvent"]:
        """Normalise a verified webhook; ``None`` for event types the ledger does not consume."""
        provider = (event.provider or "").lower()
        internal = PROVIDER_EVENT_TO_INTERNAL.get(provider, {}).get(event.type)
        if internal is None:
            return None
        if not event.id:
            raise MalformedEventException("event id missing", field="id")

        obj = (event.data or {}).get("object")
        if not isinstance(obj, dict):
            raise MalformedEventException("event object missing", event_id=event.id, field="data.object")

        event_type = SettlementEventType(internal)
        if event_type.is_dispute:
            details, external_ref = _dispute_details(provider, obj, event.id)
        else:
            details, external_ref = _payment_details(obj), obj.get("id")

        if not isinstance(external_ref, str) or not external_ref:
            raise MalformedEventException("external reference missing", event_id=event.id, field="external_ref")
        return cls(
            event_id=event.id,
            event_type=event_type,
            external_ref=external_ref,
            provider=provider,
            provider_event_type=event.type,
            details=details,
        )

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ProcessorEvent":
        return cls.model_validate(payload)


def _payment_details(obj: dict[str, Any]) -> dict[str, Any]:
    details: dict[str, Any] = {}
    error = obj.get("last_payment_error") or {}
    if isinstance(error, dict) and error.get("message"):
        details["failure_reason"] = error["message"]
    elif obj.get("cancellation_reason"):
        details["failure_reason"] = obj["cancellation_reason"]
    charge = obj.get("latest_charge")
    if isinstance(charge, dict):
        charge = charge.get("id")
    if charge:
        details["charge_id"] = charge
    methods = obj.get("payment_method_types") or []
    if methods:
        details["payment_method"] = methods[0]
    return details


def _dispute_details(provider: str, obj: dict[str, Any], event_id: str) -> tuple[dict[str, Any], Any]:
    dispute_id = obj.get("id")
    raw_status = obj.get("status")
    status = PROVIDER_DISPUTE_STATUS_TO_INTERNAL.get(provider, {}).get(raw_status)
    if not dispute_id or status is None:
        raise MalformedEventException("dispute id or status missing", event_id=event_id, field="status")
    amount = obj.get("amount")
    if amount is not None and (isinstance(amount, bool) or not isinstance(amount, int) or amount < 0):
        raise MalformedEventException("dispute amount invalid", event_id=event_id, field="amount")
    intent = obj.get("payment_intent")
    if isinstance(intent, dict):
        intent = intent.get("id")
    details = {
        "dispute_id": dispute_id,
        "dispute_status": status,
        "dispute_reason": obj.get("reason"),
        "amount": amount,
    }
    return details, intent


class SettlementOutcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    REPAIRED = "repaired"
    DEAD_LETTERED = "dead_lettered"


class SettlementResult(BaseModel):
    event_id: str
    event_type: Optional[str] = None
    outcome: SettlementOutcome
    transaction_id: Optional[str] = None
    duplicate: bool = False

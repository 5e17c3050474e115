from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from api.dependencies import get_payment_service
from application.dto import EarningsSummaryDTO, PurchaseIntentDTO
from application.dtos.payments import SettlementOutcome, SettlementResult
from core.settings import payment_settings
from domain.payment.entity import Dispute, DisputeStatus, Refund, RefundReason, RefundStatus
from domain.payment.exceptions import DuplicatePurchaseException, ReceiptNotFoundException
from infrastructure.external.payments.exceptions import PaymentProviderError, PaymentSignatureError
from main import app


class FakeService:
    def __init__(self):
        self.calls = []

    async def initiate_purchase(self, buyer_id, item_id):
        self.calls.append(("purchase", buyer_id, item_id))
        if item_id == "owned":
            raise DuplicatePurchaseException(buyer_id, item_id)
        return PurchaseIntentDTO(
            transaction_id="tx-1", client_secret="cs", amount=1000, currency="USD",
            platform_fee=150, creator_revenue=850,
        )

    async def handle_processor_event(self, payload, signature):
        self.calls.append(("webhook", payload, signature))
        if signature != "valid":
            raise PaymentSignatureError("Invalid signature", provider="stripe")
        return SettlementResult(event_id="evt_1", outcome=SettlementOutcome.APPLIED)

    async def get_creator_earnings_summary(self, creator_id, period, year, month):
        self.calls.append(("summary", creator_id, period, year, month))
        return EarningsSummaryDTO(
            creator_id=creator_id, period=period, available=850, pending=0, paid=0, total=850,
            total_sales=1, total_revenue=1000,
        )

    async def request_refund(self, transaction_id, amount, reason, actor_id):
        if transaction_id == "declined":
            raise PaymentProviderError("card issuer unavailable", provider="stripe")
        return Refund(
            id="rf-1", transaction_id=transaction_id, amount=amount or 1000, reason=reason,
            status=RefundStatus.SUCCEEDED, created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        )

    async def record_dispute(self, transaction_id, dispute_id, reason, amount, status, actor_id):
        self.calls.append(("dispute", transaction_id, dispute_id, reason, amount, status, actor_id))
        return Dispute(
            id="dsp-1", transaction_id=transaction_id, external_ref=dispute_id, amount=amount or 1000,
            status=DisputeStatus.NEEDS_RESPONSE, reason=reason,
        )

    async def get_receipt(self, transaction_id):
        raise ReceiptNotFoundException(transaction_id)

    async def list_history(self, *, buyer_id=None, creator_id=None, skip=0, limit=100):
        self.calls.append(("history", buyer_id, creator_id, skip, limit))
        return [], 0


@pytest.fixture
def service():
    fake = FakeService()
    app.dependency_overrides[get_payment_service] = lambda: fake
    yield fake
    app.dependency_overrides.clear()


@pytest.fixture
def client(service):
    return TestClient(app)


def test_purchase_returns_envelope(client):
    resp = client.post("/api/v1/payments/purchases", json={"buyer_id": "buyer-1", "item_id": "item-1"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["code"] == 0
    assert body["data"]["transaction_id"] == "tx-1"
    assert body["data"]["platform_fee"] == 150
    assert "X-Request-ID" in resp.headers


def test_business_errors_map_to_http_status(client):
    resp = client.post("/api/v1/payments/purchases", json={"buyer_id": "buyer-1", "item_id": "owned"})
    assert resp.status_code == 409
    assert resp.json()["error"]["type"] == "DuplicatePurchase"

    resp = client.get("/api/v1/payments/receipts/tx-9")
    assert resp.status_code == 404

    resp = client.post("/api/v1/payments/refunds", json={"transaction_id": "declined"})
    assert resp.status_code == 502


def test_request_validation(client):
    resp = client.post("/api/v1/payments/refunds", json={"transaction_id": "tx-1", "amount": 0})
    assert resp.status_code == 422
    assert resp.json()["error"]["type"] == "ValidationError"


def test_refund_route(client):
    resp = client.post(
        "/api/v1/payments/refunds",
        json={"transaction_id": "tx-1", "amount": 300, "reason": "duplicate"},
    )
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["amount"] == 300
    assert data["reason"] == RefundReason.DUPLICATE.value
    assert data["created_at"] == "2026-01-01T00:00:00Z"


def test_record_dispute_route(client, service):
    resp = client.post(
        "/api/v1/payments/disputes",
        json={
            "transaction_id": "tx-1",
            "dispute_id": "dp_1",
            "reason": "fraudulent",
            "amount": 1000,
            "status": "warning_needs_response",
            "actor_id": "admin-1",
        },
    )
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["external_ref"] == "dp_1"
    assert data["status"] == "needs_response"
    assert service.calls[-1] == ("dispute", "tx-1", "dp_1", "fraudulent", 1000, "warning_needs_response", "admin-1")

    resp = client.post(
        "/api/v1/payments/disputes",
        json={"transaction_id": "tx-1", "dispute_id": "dp_1", "status": "escalated"},
    )
    assert resp.status_code == 422


def test_webhook_passes_raw_body_and_signature(client, service):
    resp = client.post(
        "/api/v1/payments/webhooks/stripe",
        content=b'{"id": "evt_1"}',
        headers={"Stripe-Signature": "valid"},
    )
    assert resp.status_code == 200
    assert resp.json()["data"] == {"received": True, "event_id": "evt_1", "outcome": "applied", "duplicate": False}
    assert service.calls[-1] == ("webhook", b'{"id": "evt_1"}', "valid")


def test_webhook_bad_signature_is_400(client):
    resp = client.post("/api/v1/payments/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "x"})
    assert resp.status_code == 400
    assert resp.json()["error"]["type"] == "PaymentSignatureError"


def test_webhook_ip_allowlist(client, monkeypatch):
    monkeypatch.setattr(payment_settings.webhook, "ip_allowlist", ["10.0.0.0/8"])

    denied = client.post("/api/v1/payments/webhooks/stripe", content=b"{}", headers={"Stripe-Signature": "valid"})
    allowed = client.post(
        "/api/v1/payments/webhooks/stripe",
        content=b"{}",
        headers={"Stripe-Signature": "valid", "X-Forwarded-For": "10.1.2.3"},
    )

    assert denied.status_code == 403
    assert allowed.status_code == 200


def test_earnings_summary_query(client, service):
    resp = client.get("/api/v1/payments/creators/creator-1/earnings", params={"period": "month", "year": 2026, "month": 3})
    assert resp.status_code == 200
    assert resp.json()["data"]["available"] == 850
    assert service.calls[-1] == ("summary", "creator-1", "month", 2026, 3)

    assert client.get("/api/v1/payments/creators/creator-1/earnings", params={"period": "week"}).status_code == 422


def test_history_pagination(client, service):
    resp = client.get("/api/v1/payments/history", params={"buyer_id": "buyer-1", "page": 2, "size": 10})
    assert resp.status_code == 200
    assert resp.json()["data"] == {"items": [], "total": 0, "page": 2, "size": 10, "pages": 0}
    assert service.calls[-1] == ("history", "buyer-1", None, 10, 10)


def test_health(client):
    assert client.get("/health").json()["data"] == {"status": "healthy"}

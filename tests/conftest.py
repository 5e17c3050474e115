"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import functools
import itertools
import json
import os

# 测试使用 sqlite，Celery 进入 eager 模式
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///./test_ledger.db")

import pytest
import pytest_asyncio

from application.dtos.payments import (
    PaymentIntent,
    ProcessorEvent,
    RefundResult,
    SettlementEventType,
    WebhookEvent,
)
from application.ports.catalog import CatalogItem
from application.services.payment_service import PaymentService
from core.settings import LedgerSettings
from infrastructure.database import build_engine, build_session_factory, create_tables
from infrastructure.external.payments.exceptions import PaymentSignatureError
from infrastructure.locks import InProcessKeyedLock
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


class StubGateway:
    """In-memory processor: intent ids derive from the idempotency key."""

    provider = "stripe"

    def __init__(self):
        self.intents = []
        self.refunds = []
        self.refund_status = "succeeded"
        self.refund_error = None

    async def create_payment_intent(self, req):
        self.intents.append(req)
        intent_id = f"pi_{req.idempotency_key[:16]}"
        return PaymentIntent(
            intent_id=intent_id,
            status="pending",
            provider=self.provider,
            client_secret=f"{intent_id}_secret",
            amount=req.amount,
            currency=req.currency,
        )

    async def get_payment_intent(self, intent_id):
        return PaymentIntent(intent_id=intent_id, status="pending", provider=self.provider)

    async def create_refund(self, req):
        self.refunds.append(req)
        if self.refund_error is not None:
            raise self.refund_error
        return RefundResult(
            refund_id=f"re_{len(self.refunds)}",
            status=self.refund_status,
            provider=self.provider,
            amount=req.amount,
        )

    def verify_and_parse_event(self, payload, signature):
        if signature != "valid":
            raise PaymentSignatureError("Invalid signature", provider=self.provider)
        data = json.loads(payload)
        return WebhookEvent(id=data["id"], type=data["type"], provider=self.provider, data=data["data"])


class StubCatalog:
    def __init__(self):
        self.users = {"buyer-1", "buyer-2"}
        self.items = {
            "item-1": CatalogItem(
                item_id="item-1", creator_id="creator-1", title="Brush Pack", price=1000,
                currency="USD", creator_name="Ana",
            ),
            "item-2": CatalogItem(
                item_id="item-2", creator_id="creator-1", title="Texture Set", price=2500, currency="USD",
            ),
            "item-off": CatalogItem(
                item_id="item-off", creator_id="creator-1", title="Retired", price=500,
                currency="USD", is_active=False,
            ),
        }

    async def get_item(self, item_id):
        return self.items.get(item_id)

    async def user_exists(self, user_id):
        return user_id in self.users


class RecordingNotifier:
    def __init__(self):
        self.events = []

    async def publish(self, events):
        self.events.extend(events)

    def names(self):
        return [e.name for e in self.events]


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", echo=False)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def uow_factory(engine):
    return functools.partial(SQLAlchemyUnitOfWork, build_session_factory(engine))


@pytest.fixture
def ledger_settings():
    return LedgerSettings(orphan_max_attempts=2, orphan_base_backoff=0, orphan_max_backoff=0)


@pytest.fixture
def locks():
    return InProcessKeyedLock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def catalog():
    return StubCatalog()


@pytest.fixture
def payment_service(uow_factory, gateway, catalog, locks, ledger_settings, notifier):
    return PaymentService(
        uow_factory,
        gateway,
        catalog,
        locks,
        ledger_settings=ledger_settings,
        notifier=notifier,
    )


@pytest.fixture
def make_event():
    counter = itertools.count(1)

    def _make(event_type, external_ref, event_id=None, **details):
        return ProcessorEvent(
            event_id=event_id or f"evt_{next(counter)}",
            event_type=SettlementEventType(event_type),
            external_ref=external_ref,
            provider="stripe",
            details=details,
        )

    return _make


@pytest.fixture
def purchase(payment_service, make_event):
    """Create a transaction through the service, settling it unless told otherwise."""

    async def _purchase(buyer_id="buyer-1", item_id="item-1", *, settle=True):
        intent = await payment_service.initiate_purchase(buyer_id, item_id)
        transaction = await payment_service.get_transaction(intent.transaction_id)
        if settle:
            await payment_service.settlement.process(
                make_event("payment.succeeded", transaction.external_ref, charge_id="ch_1")
            )
            transaction = await payment_service.get_transaction(transaction.id)
        return transaction

    return _purchase

"""
Ledger services bound to one unit of work.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Sequence

from application.ports.notifier import Notifier
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.ledger import EarningsLedger, TransactionLedger
from domain.payment.receipt import ReceiptGenerator

UnitOfWorkFactory = Callable[..., AbstractUnitOfWork]

logger = get_logger(__name__)


@dataclass
class LedgerContext:
    uow: AbstractUnitOfWork
    transactions: TransactionLedger
    earnings: EarningsLedger
    receipts: ReceiptGenerator
    events: List = field(default_factory=list)

    @classmethod
    def bind(cls, uow: AbstractUnitOfWork) -> "LedgerContext":
        return cls(
            uow=uow,
            transactions=TransactionLedger(uow.transaction_repository),
            earnings=EarningsLedger(uow.earning_repository),
            receipts=ReceiptGenerator(uow.receipt_repository),
        )

    def collect_events(self) -> List:
        events = self.transactions.clear_events() + self.earnings.clear_events() + self.events
        self.events = []
        return events


async def publish_events(notifier: Notifier, events: Sequence) -> None:
    """Secondary effects never fail the ledger operation that produced them."""
    if not events:
        return
    try:
        await notifier.publish(events)
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "settlement_side_effect_failed",
            events=[e.name for e in events],
            error=str(exc),
            exc_info=True,
        )

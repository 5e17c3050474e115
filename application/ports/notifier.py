"""
Notifier port for secondary effects (emails, creator alerts).

Delivery failures must never roll back ledger state; implementations are
expected to hand work off to an independently retryable channel.
"""
from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable

from domain.payment.events import SettlementEvent


@runtime_checkable
class Notifier(Protocol):
    async def publish(self, events: Sequence[SettlementEvent]) -> None: ...


class NullNotifier:
    """Drops events; used when no background worker is configured."""

    async def publish(self, events: Sequence[SettlementEvent]) -> None:
        return None

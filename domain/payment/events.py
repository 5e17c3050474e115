"""
Settlement domain events.

Dataclass events record ledger lifecycle facts for downstream handling
(notifications, projections). Domain remains free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid


@dataclass
class SettlementEvent:
    transaction_id: str
    external_ref: Optional[str] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def name(self) -> str:
        return type(self).__name__


@dataclass
class TransactionSucceeded(SettlementEvent):
    buyer_id: str = ""
    creator_id: str = ""
    receipt_number: Optional[str] = None
    amount: int = 0
    currency: str = ""


@dataclass
class TransactionFailed(SettlementEvent):
    status: str = "failed"
    reason: Optional[str] = None


@dataclass
class TransactionRefunded(SettlementEvent):
    refund_id: str = ""
    amount: int = 0
    fully_refunded: bool = False


@dataclass
class EarningOpened(SettlementEvent):
    earning_id: str = ""
    creator_id: str = ""
    net_amount: int = 0


@dataclass
class EarningForfeited(SettlementEvent):
    earning_id: str = ""
    creator_id: str = ""
    reason: str = ""


@dataclass
class DisputeOpened(SettlementEvent):
    dispute_id: str = ""
    creator_id: str = ""
    amount: int = 0
    reason: Optional[str] = None


@dataclass
class DisputeResolved(SettlementEvent):
    dispute_id: str = ""
    creator_id: str = ""
    outcome: str = ""

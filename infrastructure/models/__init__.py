"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import (
    DeadLetterEventModel,
    DisputeModel,
    EarningModel,
    ProcessedEventModel,
    ReceiptModel,
    RefundModel,
    TransactionModel,
)

__all__ = [
    "Base",
    "metadata",
    "TransactionModel",
    "EarningModel",
    "RefundModel",
    "DisputeModel",
    "ReceiptModel",
    "ProcessedEventModel",
    "DeadLetterEventModel",
]

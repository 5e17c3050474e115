"""Unit of Work 抽象定义"""
from __future__ import annotations

from abc import ABC, abstractmethod

from domain.payment.repository import (
    DeadLetterRepository,
    DisputeRepository,
    EarningRepository,
    ProcessedEventRepository,
    ReceiptRepository,
    RefundRepository,
    TransactionRepository,
)


class AbstractUnitOfWork(ABC):
    """应用层事务边界控制抽象"""

    transaction_repository: TransactionRepository
    earning_repository: EarningRepository
    refund_repository: RefundRepository
    dispute_repository: DisputeRepository
    receipt_repository: ReceiptRepository
    processed_event_repository: ProcessedEventRepository
    dead_letter_repository: DeadLetterRepository

    def __init__(self, *, readonly: bool = False) -> None:
        self._committed = False
        self._readonly = readonly
        self.transaction_repository = None  # type: ignore[assignment]
        self.earning_repository = None  # type: ignore[assignment]
        self.refund_repository = None  # type: ignore[assignment]
        self.dispute_repository = None  # type: ignore[assignment]
        self.receipt_repository = None  # type: ignore[assignment]
        self.processed_event_repository = None  # type: ignore[assignment]
        self.dead_letter_repository = None  # type: ignore[assignment]

    async def __aenter__(self) -> "AbstractUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc:
            await self.rollback()
        else:
            # 只在非只读且未显式提交时自动提交
            if not self._readonly and not self._committed:
                await self.commit()

    @abstractmethod
    async def commit(self) -> None:
        """提交事务"""
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """回滚事务"""

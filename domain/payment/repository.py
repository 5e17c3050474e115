"""
结算仓储接口 - 定义账本数据访问的抽象接口

所有状态更新都是比较并交换（compare-and-set）：实现必须以
(id, expected_status, version) 为条件写入，未命中时抛出
ConcurrentModificationException。
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional

from .entity import (
    DeadLetterEvent,
    Dispute,
    Earning,
    EarningStatus,
    EarningsTotals,
    ItemSales,
    ProcessedEvent,
    Receipt,
    Refund,
    Transaction,
    TransactionStatus,
)


class TransactionRepository(ABC):
    """交易仓储抽象接口"""

    @abstractmethod
    async def create(self, transaction: Transaction) -> Transaction:
        """创建交易；external_ref 重复时抛出 TransactionAlreadyExistsException"""
        pass

    @abstractmethod
    async def get_by_id(self, transaction_id: str) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def get_by_external_ref(self, external_ref: str) -> Optional[Transaction]:
        """根据支付处理方引用获取交易（事件幂等查找键）"""
        pass

    @abstractmethod
    async def update(self, transaction: Transaction, expected_status: TransactionStatus) -> Transaction:
        """CAS 更新可变字段，成功后 version + 1"""
        pass

    @abstractmethod
    async def list_by_creator(
        self,
        creator_id: str,
        skip: int = 0,
        limit: int = 100,
        statuses: Optional[Iterable[TransactionStatus]] = None,
    ) -> List[Transaction]:
        """按创建时间倒序"""
        pass

    @abstractmethod
    async def list_by_buyer(
        self,
        buyer_id: str,
        skip: int = 0,
        limit: int = 100,
        statuses: Optional[Iterable[TransactionStatus]] = None,
    ) -> List[Transaction]:
        """按创建时间倒序"""
        pass

    @abstractmethod
    async def count_by_creator(self, creator_id: str) -> int:
        pass

    @abstractmethod
    async def count_by_buyer(self, buyer_id: str) -> int:
        pass

    @abstractmethod
    async def exists_for_buyer_item(
        self,
        buyer_id: str,
        item_id: str,
        statuses: Iterable[TransactionStatus],
    ) -> bool:
        """买家是否已有指定状态的该商品交易"""
        pass

    @abstractmethod
    async def count_attempts(self, buyer_id: str, item_id: str) -> int:
        """买家对该商品的购买尝试次数"""
        pass

    @abstractmethod
    async def sales_summary(
        self,
        creator_id: str,
        statuses: Iterable[TransactionStatus],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> tuple[int, int]:
        """返回 (销售笔数, 销售总额)"""
        pass

    @abstractmethod
    async def top_items(
        self,
        creator_id: str,
        statuses: Iterable[TransactionStatus],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 10,
    ) -> List[ItemSales]:
        """按销售额倒序的商品排行"""
        pass


class EarningRepository(ABC):
    """收益仓储抽象接口"""

    @abstractmethod
    async def create(self, earning: Earning) -> Earning:
        """创建收益；同一交易重复创建时抛出 EarningAlreadyExistsException"""
        pass

    @abstractmethod
    async def get_by_id(self, earning_id: str) -> Optional[Earning]:
        pass

    @abstractmethod
    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Earning]:
        pass

    @abstractmethod
    async def update(self, earning: Earning, expected_status: EarningStatus) -> Earning:
        """CAS 更新，成功后 version + 1"""
        pass

    @abstractmethod
    async def totals_for_creator(
        self,
        creator_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> EarningsTotals:
        """按状态聚合净收益"""
        pass


class RefundRepository(ABC):
    """退款仓储抽象接口"""

    @abstractmethod
    async def create(self, refund: Refund) -> Refund:
        pass

    @abstractmethod
    async def get_by_id(self, refund_id: str) -> Optional[Refund]:
        pass

    @abstractmethod
    async def list_by_transaction(self, transaction_id: str) -> List[Refund]:
        pass


class DisputeRepository(ABC):
    """争议仓储抽象接口"""

    @abstractmethod
    async def create(self, dispute: Dispute) -> Dispute:
        pass

    @abstractmethod
    async def get_by_external_ref(self, external_ref: str) -> Optional[Dispute]:
        pass

    @abstractmethod
    async def get_active_for_transaction(self, transaction_id: str) -> Optional[Dispute]:
        """获取 needs_response / under_review 状态的争议"""
        pass

    @abstractmethod
    async def update(self, dispute: Dispute) -> Dispute:
        pass


class ReceiptRepository(ABC):
    """收据仓储：只允许创建与读取"""

    @abstractmethod
    async def create(self, receipt: Receipt) -> Receipt:
        pass

    @abstractmethod
    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Receipt]:
        pass


class ProcessedEventRepository(ABC):
    """已处理事件去重集合"""

    @abstractmethod
    async def get(self, event_id: str) -> Optional[ProcessedEvent]:
        pass

    @abstractmethod
    async def add(self, event: ProcessedEvent) -> ProcessedEvent:
        """event_id 已存在时抛出 ConcurrentModificationException"""
        pass


class DeadLetterRepository(ABC):
    """死信事件仓储"""

    @abstractmethod
    async def get(self, event_id: str) -> Optional[DeadLetterEvent]:
        pass

    @abstractmethod
    async def save(self, event: DeadLetterEvent) -> DeadLetterEvent:
        """插入或更新"""
        pass

    @abstractmethod
    async def list_unresolved(self, limit: int = 100, max_attempts: Optional[int] = None) -> List[DeadLetterEvent]:
        pass

    @abstractmethod
    async def list_unresolved_for_ref(self, external_ref: str) -> List[DeadLetterEvent]:
        """某处理方引用下尚未解决的死信（按创建时间排序）"""
        pass

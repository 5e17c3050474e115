"""
账本领域服务 - 交易账本与收益账本
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from .entity import (
    Earning,
    EarningsPeriod,
    EarningsTotals,
    Transaction,
    TransactionStatus,
    new_id,
)
from .events import (
    EarningForfeited,
    EarningOpened,
    TransactionFailed,
    TransactionRefunded,
    TransactionSucceeded,
)
from .exceptions import (
    EarningAlreadyExistsException,
    EarningNotFoundException,
    TransactionAlreadyExistsException,
    TransactionNotFoundException,
)
from .receipt import generate_receipt_number
from .repository import EarningRepository, TransactionRepository


class TransactionLedger:
    """
    交易账本 - 每次购买尝试的持久记录

    职责：
    1. 创建 pending 交易（校验拆分与引用唯一性）
    2. 执行状态机迁移（CAS 持久化）
    3. 产生领域事件
    """

    def __init__(self, transaction_repository: TransactionRepository):
        self.transaction_repository = transaction_repository
        self.events: List = []  # 领域事件收集

    async def create(
        self,
        buyer_id: str,
        item_id: str,
        creator_id: str,
        amount: int,
        currency: str,
        external_ref: str,
        platform_fee: int,
        creator_revenue: int,
        metadata: Optional[dict] = None,
        payment_method: str = "card",
    ) -> Transaction:
        """
        创建交易记录

        业务规则：
        1. external_ref 不能重复
        2. 金额、拆分、货币由实体校验
        """
        if await self.transaction_repository.get_by_external_ref(external_ref):
            raise TransactionAlreadyExistsException(external_ref)

        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=new_id(),
            buyer_id=buyer_id,
            item_id=item_id,
            creator_id=creator_id,
            amount=amount,
            currency=currency,
            platform_fee=platform_fee,
            creator_revenue=creator_revenue,
            external_ref=external_ref,
            status=TransactionStatus.PENDING,
            payment_method=payment_method,
            receipt_number=generate_receipt_number(now),
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        return await self.transaction_repository.create(transaction)

    async def get(self, transaction_id: str) -> Transaction:
        transaction = await self.transaction_repository.get_by_id(transaction_id)
        if not transaction:
            raise TransactionNotFoundException(f"id={transaction_id}")
        return transaction

    async def find_by_external_ref(self, external_ref: str) -> Optional[Transaction]:
        return await self.transaction_repository.get_by_external_ref(external_ref)

    async def transition(
        self,
        transaction_id: str,
        new_status: TransactionStatus,
        extra: Optional[dict] = None,
        *,
        failure_reason: Optional[str] = None,
    ) -> Transaction:
        """
        状态迁移

        非法迁移抛出 InvalidTransitionException；并发修改抛出
        ConcurrentModificationException。
        """
        transaction = await self.get(transaction_id)
        prior = transaction.status
        transaction.transition_to(new_status, extra)
        if failure_reason is not None:
            transaction.failure_reason = failure_reason
        updated = await self.transaction_repository.update(transaction, expected_status=prior)

        if prior == TransactionStatus.PENDING:
            if updated.status == TransactionStatus.SUCCEEDED:
                self.events.append(TransactionSucceeded(
                    transaction_id=updated.id,
                    external_ref=updated.external_ref,
                    buyer_id=updated.buyer_id,
                    creator_id=updated.creator_id,
                    receipt_number=updated.receipt_number,
                    amount=updated.amount,
                    currency=updated.currency,
                ))
            else:
                self.events.append(TransactionFailed(
                    transaction_id=updated.id,
                    external_ref=updated.external_ref,
                    status=updated.status.value,
                    reason=updated.failure_reason,
                ))
        return updated

    async def apply_refund(
        self,
        transaction_id: str,
        amount: int,
        refund_id: str,
        extra: Optional[dict] = None,
    ) -> Transaction:
        """累加已退款金额并迁移到 refunded / partially_refunded"""
        transaction = await self.get(transaction_id)
        prior = transaction.status
        fully = transaction.apply_refund(amount, extra)
        updated = await self.transaction_repository.update(transaction, expected_status=prior)
        self.events.append(TransactionRefunded(
            transaction_id=updated.id,
            external_ref=updated.external_ref,
            refund_id=refund_id,
            amount=amount,
            fully_refunded=fully,
        ))
        return updated

    async def list_for_creator(self, creator_id: str, skip: int = 0, limit: int = 100) -> List[Transaction]:
        return await self.transaction_repository.list_by_creator(creator_id, skip=skip, limit=limit)

    async def list_for_buyer(self, buyer_id: str, skip: int = 0, limit: int = 100) -> List[Transaction]:
        return await self.transaction_repository.list_by_buyer(buyer_id, skip=skip, limit=limit)

    def clear_events(self) -> List:
        """清空并返回领域事件"""
        events = self.events.copy()
        self.events.clear()
        return events


class EarningsLedger:
    """
    收益账本 - 创作者应付余额

    每次变更都以期望的前置状态做 CAS，并发修改时抛出
    ConcurrentModificationException，由调用方重新读取后重试。
    """

    def __init__(self, earning_repository: EarningRepository):
        self.earning_repository = earning_repository
        self.events: List = []

    async def open(
        self,
        transaction_id: str,
        creator_id: str,
        item_id: str,
        gross_amount: int,
        platform_fee: int,
    ) -> Earning:
        """创建 available 收益；每笔交易仅允许一条"""
        if await self.earning_repository.get_by_transaction_id(transaction_id):
            raise EarningAlreadyExistsException(transaction_id)

        now = datetime.now(timezone.utc)
        earning = Earning(
            id=new_id(),
            creator_id=creator_id,
            transaction_id=transaction_id,
            item_id=item_id,
            gross_amount=gross_amount,
            platform_fee=platform_fee,
            net_amount=gross_amount - platform_fee,
            created_at=now,
            updated_at=now,
        )
        created = await self.earning_repository.create(earning)
        self.events.append(EarningOpened(
            transaction_id=transaction_id,
            earning_id=created.id,
            creator_id=creator_id,
            net_amount=created.net_amount,
        ))
        return created

    async def get(self, earning_id: str) -> Earning:
        earning = await self.earning_repository.get_by_id(earning_id)
        if not earning:
            raise EarningNotFoundException(f"id={earning_id}")
        return earning

    async def get_for_transaction(self, transaction_id: str) -> Optional[Earning]:
        return await self.earning_repository.get_by_transaction_id(transaction_id)

    async def hold(self, earning_id: str) -> Earning:
        earning = await self.get(earning_id)
        prior = earning.status
        if not earning.hold():
            return earning
        return await self.earning_repository.update(earning, expected_status=prior)

    async def release(self, earning_id: str) -> Earning:
        earning = await self.get(earning_id)
        prior = earning.status
        earning.release()
        return await self.earning_repository.update(earning, expected_status=prior)

    async def zero(self, earning_id: str, reason: str = "") -> Earning:
        earning = await self.get(earning_id)
        prior = earning.status
        if not earning.zero():
            return earning
        updated = await self.earning_repository.update(earning, expected_status=prior)
        self.events.append(EarningForfeited(
            transaction_id=updated.transaction_id,
            earning_id=updated.id,
            creator_id=updated.creator_id,
            reason=reason,
        ))
        return updated

    async def mark_paid(self, earning_id: str, payout_date: datetime) -> Earning:
        earning = await self.get(earning_id)
        prior = earning.status
        earning.mark_paid(payout_date)
        return await self.earning_repository.update(earning, expected_status=prior)

    async def totals_for_creator(self, creator_id: str, period: Optional[EarningsPeriod] = None) -> EarningsTotals:
        start, end = (period or EarningsPeriod()).bounds()
        return await self.earning_repository.totals_for_creator(creator_id, start=start, end=end)

    def clear_events(self) -> List:
        events = self.events.copy()
        self.events.clear()
        return events

"""
结算仓储实现 - 使用SQLAlchemy实现数据访问

查询统一带 populate_existing，保证同一会话内重新读取时拿到最新行；
状态更新为条件 UPDATE（id + 期望状态 + 版本号），影响行数为0即视为并发冲突。
"""
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from domain.payment.entity import (
    DeadLetterEvent,
    Dispute,
    DisputeStatus,
    Earning,
    EarningStatus,
    EarningsTotals,
    ItemSales,
    OPEN_DISPUTE_STATUSES,
    ProcessedEvent,
    Receipt,
    Refund,
    Transaction,
    TransactionStatus,
)
from domain.payment.exceptions import (
    ConcurrentModificationException,
    EarningAlreadyExistsException,
    TransactionAlreadyExistsException,
)
from domain.payment.repository import (
    DeadLetterRepository,
    DisputeRepository,
    EarningRepository,
    ProcessedEventRepository,
    ReceiptRepository,
    RefundRepository,
    TransactionRepository,
)
from infrastructure.models.payment import (
    DeadLetterEventModel,
    DisputeModel,
    EarningModel,
    ProcessedEventModel,
    ReceiptModel,
    RefundModel,
    TransactionModel,
)
from core.logging_config import get_logger


logger = get_logger(__name__)


def _values(statuses: Iterable) -> list[str]:
    return [getattr(s, "value", s) for s in statuses]


class SQLAlchemyTransactionRepository(TransactionRepository):
    """交易仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: TransactionModel) -> Transaction:
        """将数据库模型转换为领域实体"""
        return Transaction(
            id=model.id,
            buyer_id=model.buyer_id,
            item_id=model.item_id,
            creator_id=model.creator_id,
            amount=model.amount,
            currency=model.currency,
            platform_fee=model.platform_fee,
            creator_revenue=model.creator_revenue,
            external_ref=model.external_ref,
            status=TransactionStatus(model.status),
            payment_method=model.payment_method,
            receipt_number=model.receipt_number,
            refunded_amount=model.refunded_amount or 0,
            failure_reason=model.failure_reason,
            metadata=dict(model.extra_metadata or {}),
            version=model.version,
            created_at=model.created_at,
            updated_at=model.updated_at,
            succeeded_at=model.succeeded_at,
        )

    def _to_model(self, entity: Transaction) -> TransactionModel:
        """将领域实体转换为数据库模型"""
        return TransactionModel(
            id=entity.id,
            buyer_id=entity.buyer_id,
            item_id=entity.item_id,
            creator_id=entity.creator_id,
            amount=entity.amount,
            currency=entity.currency,
            platform_fee=entity.platform_fee,
            creator_revenue=entity.creator_revenue,
            refunded_amount=entity.refunded_amount,
            external_ref=entity.external_ref,
            payment_method=entity.payment_method,
            receipt_number=entity.receipt_number,
            status=entity.status.value,
            failure_reason=entity.failure_reason,
            extra_metadata=entity.metadata,
            version=entity.version,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            succeeded_at=entity.succeeded_at,
        )

    async def _select_one(self, *criteria) -> Optional[Transaction]:
        result = await self.session.execute(
            select(TransactionModel).where(*criteria).execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def create(self, transaction: Transaction) -> Transaction:
        """创建交易记录"""
        db_tx = self._to_model(transaction)
        try:
            self.session.add(db_tx)
            await self.session.flush()
        except IntegrityError:
            logger.warning("transaction_create_conflict", external_ref=transaction.external_ref)
            raise TransactionAlreadyExistsException(transaction.external_ref) from None
        await self.session.refresh(db_tx)
        logger.info(
            "transaction_created",
            transaction_id=db_tx.id,
            external_ref=db_tx.external_ref,
            amount=db_tx.amount,
            currency=db_tx.currency,
        )
        return self._to_entity(db_tx)

    async def get_by_id(self, transaction_id: str) -> Optional[Transaction]:
        return await self._select_one(TransactionModel.id == transaction_id)

    async def get_by_external_ref(self, external_ref: str) -> Optional[Transaction]:
        return await self._select_one(TransactionModel.external_ref == external_ref)

    async def update(self, transaction: Transaction, expected_status: TransactionStatus) -> Transaction:
        """条件更新可变字段（状态、元数据、退款/争议标注）"""
        expected = TransactionStatus(expected_status)
        result = await self.session.execute(
            update(TransactionModel)
            .where(
                TransactionModel.id == transaction.id,
                TransactionModel.status == expected.value,
                TransactionModel.version == transaction.version,
            )
            .values(
                status=transaction.status.value,
                refunded_amount=transaction.refunded_amount,
                failure_reason=transaction.failure_reason,
                extra_metadata=transaction.metadata,
                succeeded_at=transaction.succeeded_at,
                updated_at=transaction.updated_at,
                version=TransactionModel.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "transaction_cas_conflict",
                transaction_id=transaction.id,
                expected_status=expected.value,
                expected_version=transaction.version,
            )
            raise ConcurrentModificationException("transaction", transaction.id, expected=expected.value)

        transaction.version += 1
        logger.info(
            "transaction_transitioned",
            transaction_id=transaction.id,
            from_status=expected.value,
            to_status=transaction.status.value,
            version=transaction.version,
        )
        return transaction

    async def _list(self, column, value: str, skip: int, limit: int, statuses) -> List[Transaction]:
        query = select(TransactionModel).where(column == value)
        if statuses:
            query = query.where(TransactionModel.status.in_(_values(statuses)))
        query = (
            query.order_by(TransactionModel.created_at.desc(), TransactionModel.id.desc())
            .offset(skip)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(query)
        return [self._to_entity(m) for m in result.scalars().all()]

    async def list_by_creator(
        self,
        creator_id: str,
        skip: int = 0,
        limit: int = 100,
        statuses: Optional[Iterable[TransactionStatus]] = None,
    ) -> List[Transaction]:
        return await self._list(TransactionModel.creator_id, creator_id, skip, limit, statuses)

    async def list_by_buyer(
        self,
        buyer_id: str,
        skip: int = 0,
        limit: int = 100,
        statuses: Optional[Iterable[TransactionStatus]] = None,
    ) -> List[Transaction]:
        return await self._list(TransactionModel.buyer_id, buyer_id, skip, limit, statuses)

    async def count_by_creator(self, creator_id: str) -> int:
        result = await self.session.execute(
            select(func.count(TransactionModel.id)).where(TransactionModel.creator_id == creator_id)
        )
        return result.scalar_one()

    async def count_by_buyer(self, buyer_id: str) -> int:
        result = await self.session.execute(
            select(func.count(TransactionModel.id)).where(TransactionModel.buyer_id == buyer_id)
        )
        return result.scalar_one()

    async def exists_for_buyer_item(
        self,
        buyer_id: str,
        item_id: str,
        statuses: Iterable[TransactionStatus],
    ) -> bool:
        result = await self.session.execute(
            select(TransactionModel.id)
            .where(
                TransactionModel.buyer_id == buyer_id,
                TransactionModel.item_id == item_id,
                TransactionModel.status.in_(_values(statuses)),
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def count_attempts(self, buyer_id: str, item_id: str) -> int:
        result = await self.session.execute(
            select(func.count(TransactionModel.id)).where(
                TransactionModel.buyer_id == buyer_id,
                TransactionModel.item_id == item_id,
            )
        )
        return result.scalar_one()

    def _period_filter(self, query, start: Optional[datetime], end: Optional[datetime]):
        if start is not None:
            query = query.where(TransactionModel.created_at >= start)
        if end is not None:
            query = query.where(TransactionModel.created_at < end)
        return query

    async def sales_summary(
        self,
        creator_id: str,
        statuses: Iterable[TransactionStatus],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> tuple[int, int]:
        query = select(
            func.count(TransactionModel.id),
            func.coalesce(func.sum(TransactionModel.amount), 0),
        ).where(
            TransactionModel.creator_id == creator_id,
            TransactionModel.status.in_(_values(statuses)),
        )
        result = await self.session.execute(self._period_filter(query, start, end))
        count, revenue = result.one()
        return int(count), int(revenue)

    async def top_items(
        self,
        creator_id: str,
        statuses: Iterable[TransactionStatus],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 10,
    ) -> List[ItemSales]:
        revenue = func.sum(TransactionModel.amount).label("revenue")
        query = select(
            TransactionModel.item_id,
            func.count(TransactionModel.id).label("sales"),
            revenue,
            func.sum(TransactionModel.creator_revenue).label("earnings"),
        ).where(
            TransactionModel.creator_id == creator_id,
            TransactionModel.status.in_(_values(statuses)),
        )
        query = (
            self._period_filter(query, start, end)
            .group_by(TransactionModel.item_id)
            .order_by(revenue.desc(), TransactionModel.item_id)
            .limit(limit)
        )
        rows = (await self.session.execute(query)).all()
        if not rows:
            return []

        titles_result = await self.session.execute(
            select(ReceiptModel.item_id, func.max(ReceiptModel.item_title))
            .where(ReceiptModel.item_id.in_([r.item_id for r in rows]))
            .group_by(ReceiptModel.item_id)
        )
        titles = dict(titles_result.all())
        return [
            ItemSales(
                item_id=r.item_id,
                title=titles.get(r.item_id),
                sales=int(r.sales),
                revenue=int(r.revenue or 0),
                earnings=int(r.earnings or 0),
            )
            for r in rows
        ]


class SQLAlchemyEarningRepository(EarningRepository):
    """收益仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: EarningModel) -> Earning:
        return Earning(
            id=model.id,
            creator_id=model.creator_id,
            transaction_id=model.transaction_id,
            item_id=model.item_id,
            gross_amount=model.gross_amount,
            platform_fee=model.platform_fee,
            net_amount=model.net_amount,
            status=EarningStatus(model.status),
            payout_date=model.payout_date,
            forfeited_at=model.forfeited_at,
            version=model.version,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: Earning) -> EarningModel:
        return EarningModel(
            id=entity.id,
            creator_id=entity.creator_id,
            transaction_id=entity.transaction_id,
            item_id=entity.item_id,
            gross_amount=entity.gross_amount,
            platform_fee=entity.platform_fee,
            net_amount=entity.net_amount,
            status=entity.status.value,
            payout_date=entity.payout_date,
            forfeited_at=entity.forfeited_at,
            version=entity.version,
            created_at=entity.created_at,
            updated_at=entity.updated_at,
        )

    async def create(self, earning: Earning) -> Earning:
        db_earning = self._to_model(earning)
        try:
            self.session.add(db_earning)
            await self.session.flush()
        except IntegrityError:
            logger.warning("earning_create_conflict", transaction_id=earning.transaction_id)
            raise EarningAlreadyExistsException(earning.transaction_id) from None
        await self.session.refresh(db_earning)
        logger.info(
            "earning_opened",
            earning_id=db_earning.id,
            transaction_id=db_earning.transaction_id,
            creator_id=db_earning.creator_id,
            net_amount=db_earning.net_amount,
        )
        return self._to_entity(db_earning)

    async def _select_one(self, *criteria) -> Optional[Earning]:
        result = await self.session.execute(
            select(EarningModel).where(*criteria).execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def get_by_id(self, earning_id: str) -> Optional[Earning]:
        return await self._select_one(EarningModel.id == earning_id)

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Earning]:
        return await self._select_one(EarningModel.transaction_id == transaction_id)

    async def update(self, earning: Earning, expected_status: EarningStatus) -> Earning:
        expected = EarningStatus(expected_status)
        result = await self.session.execute(
            update(EarningModel)
            .where(
                EarningModel.id == earning.id,
                EarningModel.status == expected.value,
                EarningModel.version == earning.version,
            )
            .values(
                status=earning.status.value,
                net_amount=earning.net_amount,
                payout_date=earning.payout_date,
                forfeited_at=earning.forfeited_at,
                updated_at=earning.updated_at,
                version=EarningModel.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "earning_cas_conflict",
                earning_id=earning.id,
                expected_status=expected.value,
                expected_version=earning.version,
            )
            raise ConcurrentModificationException("earning", earning.id, expected=expected.value)

        earning.version += 1
        logger.info(
            "earning_updated",
            earning_id=earning.id,
            from_status=expected.value,
            to_status=earning.status.value,
            net_amount=earning.net_amount,
        )
        return earning

    async def totals_for_creator(
        self,
        creator_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> EarningsTotals:
        query = (
            select(EarningModel.status, func.coalesce(func.sum(EarningModel.net_amount), 0))
            .where(EarningModel.creator_id == creator_id)
            .group_by(EarningModel.status)
        )
        if start is not None:
            query = query.where(EarningModel.created_at >= start)
        if end is not None:
            query = query.where(EarningModel.created_at < end)
        sums = {status: int(total) for status, total in (await self.session.execute(query)).all()}
        return EarningsTotals(
            available=sums.get(EarningStatus.AVAILABLE.value, 0),
            pending=sums.get(EarningStatus.PENDING.value, 0),
            paid=sums.get(EarningStatus.PAID.value, 0),
        )


class SQLAlchemyRefundRepository(RefundRepository):
    """退款仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: RefundModel) -> Refund:
        return Refund(
            id=model.id,
            transaction_id=model.transaction_id,
            amount=model.amount,
            reason=model.reason,
            status=model.status,
            external_ref=model.external_ref,
            requested_by=model.requested_by,
            failure_reason=model.failure_reason,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    async def create(self, refund: Refund) -> Refund:
        db_refund = RefundModel(
            id=refund.id,
            transaction_id=refund.transaction_id,
            external_ref=refund.external_ref,
            amount=refund.amount,
            reason=refund.reason.value,
            status=refund.status.value,
            requested_by=refund.requested_by,
            failure_reason=refund.failure_reason,
            created_at=refund.created_at,
            updated_at=refund.updated_at,
        )
        self.session.add(db_refund)
        await self.session.flush()
        await self.session.refresh(db_refund)
        logger.info(
            "refund_recorded",
            refund_id=db_refund.id,
            transaction_id=db_refund.transaction_id,
            amount=db_refund.amount,
            status=db_refund.status,
        )
        return self._to_entity(db_refund)

    async def get_by_id(self, refund_id: str) -> Optional[Refund]:
        result = await self.session.execute(select(RefundModel).where(RefundModel.id == refund_id))
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def list_by_transaction(self, transaction_id: str) -> List[Refund]:
        result = await self.session.execute(
            select(RefundModel)
            .where(RefundModel.transaction_id == transaction_id)
            .order_by(RefundModel.created_at.desc())
        )
        return [self._to_entity(m) for m in result.scalars().all()]


class SQLAlchemyDisputeRepository(DisputeRepository):
    """争议仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: DisputeModel) -> Dispute:
        return Dispute(
            id=model.id,
            transaction_id=model.transaction_id,
            external_ref=model.external_ref,
            amount=model.amount,
            status=DisputeStatus(model.status),
            reason=model.reason,
            resolution=model.resolution,
            resolved_by=model.resolved_by,
            created_at=model.created_at,
            updated_at=model.updated_at,
            resolved_at=model.resolved_at,
        )

    async def create(self, dispute: Dispute) -> Dispute:
        db_dispute = DisputeModel(
            id=dispute.id,
            transaction_id=dispute.transaction_id,
            external_ref=dispute.external_ref,
            amount=dispute.amount,
            reason=dispute.reason,
            status=dispute.status.value,
            resolution=dispute.resolution,
            resolved_by=dispute.resolved_by,
            created_at=dispute.created_at,
            updated_at=dispute.updated_at,
            resolved_at=dispute.resolved_at,
        )
        try:
            self.session.add(db_dispute)
            await self.session.flush()
        except IntegrityError:
            raise ConcurrentModificationException("dispute", dispute.external_ref) from None
        await self.session.refresh(db_dispute)
        logger.info("dispute_recorded", dispute_id=db_dispute.id, transaction_id=db_dispute.transaction_id)
        return self._to_entity(db_dispute)

    async def _select_one(self, *criteria) -> Optional[Dispute]:
        result = await self.session.execute(
            select(DisputeModel)
            .where(*criteria)
            .order_by(DisputeModel.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def get_by_external_ref(self, external_ref: str) -> Optional[Dispute]:
        return await self._select_one(DisputeModel.external_ref == external_ref)

    async def get_active_for_transaction(self, transaction_id: str) -> Optional[Dispute]:
        return await self._select_one(
            DisputeModel.transaction_id == transaction_id,
            DisputeModel.status.in_(_values(OPEN_DISPUTE_STATUSES)),
        )

    async def update(self, dispute: Dispute) -> Dispute:
        await self.session.execute(
            update(DisputeModel)
            .where(DisputeModel.id == dispute.id)
            .values(
                status=dispute.status.value,
                resolution=dispute.resolution,
                resolved_by=dispute.resolved_by,
                resolved_at=dispute.resolved_at,
                updated_at=dispute.updated_at,
            )
            .execution_options(synchronize_session=False)
        )
        logger.info("dispute_updated", dispute_id=dispute.id, status=dispute.status.value)
        return dispute


class SQLAlchemyReceiptRepository(ReceiptRepository):
    """收据仓储的SQLAlchemy实现（仅插入与查询）"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: ReceiptModel) -> Receipt:
        return Receipt(
            id=model.id,
            transaction_id=model.transaction_id,
            receipt_number=model.receipt_number,
            buyer_id=model.buyer_id,
            item_id=model.item_id,
            item_title=model.item_title,
            creator_id=model.creator_id,
            creator_name=model.creator_name,
            amount=model.amount,
            currency=model.currency,
            platform_fee=model.platform_fee,
            creator_revenue=model.creator_revenue,
            payment_method=model.payment_method,
            purchase_date=model.purchase_date,
            created_at=model.created_at,
        )

    async def create(self, receipt: Receipt) -> Receipt:
        db_receipt = ReceiptModel(
            id=receipt.id,
            transaction_id=receipt.transaction_id,
            receipt_number=receipt.receipt_number,
            buyer_id=receipt.buyer_id,
            item_id=receipt.item_id,
            item_title=receipt.item_title,
            creator_id=receipt.creator_id,
            creator_name=receipt.creator_name,
            amount=receipt.amount,
            currency=receipt.currency,
            platform_fee=receipt.platform_fee,
            creator_revenue=receipt.creator_revenue,
            payment_method=receipt.payment_method,
            purchase_date=receipt.purchase_date,
            created_at=receipt.created_at,
        )
        try:
            self.session.add(db_receipt)
            await self.session.flush()
        except IntegrityError:
            raise ConcurrentModificationException("receipt", receipt.transaction_id) from None
        await self.session.refresh(db_receipt)
        logger.info(
            "receipt_issued",
            receipt_number=db_receipt.receipt_number,
            transaction_id=db_receipt.transaction_id,
        )
        return self._to_entity(db_receipt)

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Receipt]:
        result = await self.session.execute(
            select(ReceiptModel).where(ReceiptModel.transaction_id == transaction_id)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None


class SQLAlchemyProcessedEventRepository(ProcessedEventRepository):
    """已处理事件仓储"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, event_id: str) -> Optional[ProcessedEvent]:
        result = await self.session.execute(
            select(ProcessedEventModel).where(ProcessedEventModel.event_id == event_id)
        )
        model = result.scalar_one_or_none()
        if not model:
            return None
        return ProcessedEvent(
            event_id=model.event_id,
            event_type=model.event_type,
            external_ref=model.external_ref,
            outcome=model.outcome,
            transaction_id=model.transaction_id,
            processed_at=model.processed_at,
        )

    async def add(self, event: ProcessedEvent) -> ProcessedEvent:
        try:
            self.session.add(ProcessedEventModel(
                event_id=event.event_id,
                event_type=event.event_type,
                external_ref=event.external_ref,
                outcome=event.outcome,
                transaction_id=event.transaction_id,
                processed_at=event.processed_at,
            ))
            await self.session.flush()
        except IntegrityError:
            raise ConcurrentModificationException("processed_event", event.event_id) from None
        return event


class SQLAlchemyDeadLetterRepository(DeadLetterRepository):
    """死信事件仓储"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: DeadLetterEventModel) -> DeadLetterEvent:
        return DeadLetterEvent(
            event_id=model.event_id,
            event_type=model.event_type,
            external_ref=model.external_ref,
            payload=dict(model.payload or {}),
            reason=model.reason,
            attempts=model.attempts,
            created_at=model.created_at,
            last_attempt_at=model.last_attempt_at,
            resolved_at=model.resolved_at,
        )

    async def get(self, event_id: str) -> Optional[DeadLetterEvent]:
        result = await self.session.execute(
            select(DeadLetterEventModel)
            .where(DeadLetterEventModel.event_id == event_id)
            .execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def save(self, event: DeadLetterEvent) -> DeadLetterEvent:
        result = await self.session.execute(
            select(DeadLetterEventModel).where(DeadLetterEventModel.event_id == event.event_id)
        )
        model = result.scalar_one_or_none()
        if model is None:
            model = DeadLetterEventModel(
                event_id=event.event_id,
                event_type=event.event_type,
                external_ref=event.external_ref,
                created_at=event.created_at,
            )
            self.session.add(model)
        model.payload = event.payload
        model.reason = event.reason
        model.attempts = event.attempts
        model.last_attempt_at = event.last_attempt_at
        model.resolved_at = event.resolved_at
        await self.session.flush()
        return event

    async def list_unresolved(self, limit: int = 100, max_attempts: Optional[int] = None) -> List[DeadLetterEvent]:
        query = select(DeadLetterEventModel).where(DeadLetterEventModel.resolved_at.is_(None))
        if max_attempts is not None:
            query = query.where(DeadLetterEventModel.attempts < max_attempts)
        result = await self.session.execute(
            query.order_by(DeadLetterEventModel.created_at).limit(limit)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def list_unresolved_for_ref(self, external_ref: str) -> List[DeadLetterEvent]:
        result = await self.session.execute(
            select(DeadLetterEventModel)
            .where(
                DeadLetterEventModel.external_ref == external_ref,
                DeadLetterEventModel.resolved_at.is_(None),
            )
            .order_by(DeadLetterEventModel.created_at)
        )
        return [self._to_entity(m) for m in result.scalars().all()]

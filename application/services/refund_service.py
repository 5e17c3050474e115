"""
Refund processor: validates against the ledger, calls the processor once per
logical refund, then records the refund and adjusts balances atomically.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from application.dtos.payments import CreateRefund, RefundResult
from application.ports.locks import KeyedLock
from application.ports.notifier import Notifier, NullNotifier
from application.ports.payment_gateway import PaymentGateway
from application.services.ledger_context import LedgerContext, UnitOfWorkFactory, publish_events
from application.utils.idempotency import idempotency_key, lock_key
from application.utils.retry import retry_on_conflict
from core.logging_config import get_logger
from domain.payment.entity import (
    EarningStatus,
    Refund,
    RefundReason,
    RefundStatus,
    Transaction,
    new_id,
)
from domain.payment.exceptions import ExternalProcessorError, TransactionNotFoundException


logger = get_logger(__name__)

_FAILED_REFUND_STATUSES = {"failed", "canceled"}


class RefundProcessor:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        gateway: PaymentGateway,
        locks: KeyedLock,
        *,
        conflict_attempts: int = 3,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.uow_factory = uow_factory
        self.gateway = gateway
        self.locks = locks
        self.conflict_attempts = conflict_attempts
        self.notifier = notifier or NullNotifier()

    async def refund(
        self,
        transaction_id: str,
        amount: Optional[int] = None,
        reason: RefundReason | str = RefundReason.REQUESTED_BY_CUSTOMER,
        actor_id: Optional[str] = None,
    ) -> Refund:
        """
        Refund ``amount`` (default: the remaining balance) of a succeeded or
        partially refunded transaction.

        A full refund forfeits the creator's earning; partial refunds leave it
        untouched. Processor rejections are recorded as failed refunds and
        re-raised without changing the transaction.
        """
        reason = RefundReason(reason)
        async with self.uow_factory(readonly=True) as uow:
            transaction = await uow.transaction_repository.get_by_id(transaction_id)
        if transaction is None:
            raise TransactionNotFoundException(f"id={transaction_id}")

        async with self.locks.acquire(lock_key(transaction.external_ref)):
            # 加锁后重新读取，以锁内状态为准
            async with self.uow_factory(readonly=True) as uow:
                transaction = await LedgerContext.bind(uow).transactions.get(transaction_id)
            if amount is None:
                amount = transaction.remaining_refundable
            transaction.check_refund(amount)

            result = await self._call_processor(transaction, amount, reason, actor_id)
            refund, events = await retry_on_conflict(
                lambda: self._record(transaction_id, amount, reason, actor_id, result),
                attempts=self.conflict_attempts,
            )

        await publish_events(self.notifier, events)
        return refund

    async def _call_processor(
        self,
        transaction: Transaction,
        amount: int,
        reason: RefundReason,
        actor_id: Optional[str],
    ) -> RefundResult:
        # 同一笔退款重试时键不变；退款成功后 refunded_amount 变化，键随之变化
        key = idempotency_key("refund", transaction.id, transaction.refunded_amount, amount)
        request = CreateRefund(
            intent_id=transaction.external_ref,
            amount=amount,
            reason=reason.value,
            idempotency_key=key,
            metadata={"transaction_id": transaction.id, "requested_by": actor_id or ""},
        )
        try:
            result = await self.gateway.create_refund(request)
        except ExternalProcessorError as exc:
            await self._record_failure(transaction, amount, reason, actor_id, exc.message, None)
            raise

        if result.status in _FAILED_REFUND_STATUSES:
            await self._record_failure(
                transaction, amount, reason, actor_id, f"processor status {result.status}", result.refund_id,
            )
            raise ExternalProcessorError(
                "Refund rejected by processor",
                provider=result.provider,
                provider_code=result.status,
                details={"refund_id": result.refund_id},
            )
        return result

    async def _record(
        self,
        transaction_id: str,
        amount: int,
        reason: RefundReason,
        actor_id: Optional[str],
        result: RefundResult,
    ):
        async with self.uow_factory() as uow:
            ctx = LedgerContext.bind(uow)
            now = datetime.now(timezone.utc)
            refund = await uow.refund_repository.create(Refund(
                id=new_id(),
                transaction_id=transaction_id,
                amount=amount,
                reason=reason,
                status=RefundStatus.SUCCEEDED if result.status == "succeeded" else RefundStatus.PENDING,
                external_ref=result.refund_id,
                requested_by=actor_id,
                created_at=now,
                updated_at=now,
            ))
            transaction = await ctx.transactions.apply_refund(
                transaction_id,
                amount,
                refund.id,
                {"refund_reason": reason.value, "refunded_by": actor_id, "last_refund_id": refund.id},
            )
            if transaction.remaining_refundable == 0:
                await self._forfeit_earning(ctx, transaction)
            await uow.commit()

        logger.info(
            "refund_applied",
            transaction_id=transaction_id,
            refund_id=refund.id,
            amount=amount,
            refunded_amount=transaction.refunded_amount,
            status=transaction.status.value,
        )
        return refund, ctx.collect_events()

    async def _forfeit_earning(self, ctx: LedgerContext, transaction: Transaction) -> None:
        earning = await ctx.earnings.get_for_transaction(transaction.id)
        if earning is None:
            logger.error("refund_earning_missing", transaction_id=transaction.id)
            return
        if earning.status == EarningStatus.PAID:
            logger.warning(
                "refund_clawback_required",
                transaction_id=transaction.id,
                earning_id=earning.id,
                net_amount=earning.net_amount,
            )
            return
        await ctx.earnings.zero(earning.id, reason="refunded")

    async def _record_failure(
        self,
        transaction: Transaction,
        amount: int,
        reason: RefundReason,
        actor_id: Optional[str],
        failure_reason: str,
        external_ref: Optional[str],
    ) -> None:
        now = datetime.now(timezone.utc)
        async with self.uow_factory() as uow:
            await uow.refund_repository.create(Refund(
                id=new_id(),
                transaction_id=transaction.id,
                amount=amount,
                reason=reason,
                status=RefundStatus.FAILED,
                external_ref=external_ref,
                requested_by=actor_id,
                failure_reason=failure_reason,
                created_at=now,
                updated_at=now,
            ))
        logger.error(
            "refund_failed",
            transaction_id=transaction.id,
            amount=amount,
            reason=failure_reason,
        )

"""
Dispute (chargeback) lifecycle applied to the transaction and earnings ledgers.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from application.ports.locks import KeyedLock
from application.ports.notifier import Notifier, NullNotifier
from application.services.ledger_context import LedgerContext, UnitOfWorkFactory, publish_events
from application.utils.idempotency import lock_key
from application.utils.retry import retry_on_conflict
from core.logging_config import get_logger
from domain.common.exceptions import DomainValidationException
from domain.payment.entity import (
    DISPUTE_OUTCOMES,
    Dispute,
    DisputeStatus,
    EarningStatus,
    OPEN_DISPUTE_STATUSES,
    Transaction,
    TransactionStatus,
    new_id,
)
from domain.payment.events import DisputeOpened, DisputeResolved
from domain.payment.exceptions import (
    InvalidTransitionException,
    NoActiveDisputeException,
    TransactionNotFoundException,
)
from shared.codes.payment_codes import PROVIDER_DISPUTE_STATUS_TO_INTERNAL


logger = get_logger(__name__)


def _parse_outcome(outcome: str | DisputeStatus) -> DisputeStatus:
    try:
        value = DisputeStatus(outcome)
    except ValueError:
        value = None
    if value not in DISPUTE_OUTCOMES:
        raise DomainValidationException(f"Invalid dispute outcome: {outcome}", field="outcome")
    return value


def _parse_status(status: str | DisputeStatus) -> DisputeStatus:
    """内部状态或处理方状态（含 warning_* 询单状态）"""
    raw = status.value if isinstance(status, DisputeStatus) else status
    mapped = PROVIDER_DISPUTE_STATUS_TO_INTERNAL["stripe"].get(raw)
    if mapped is None:
        raise DomainValidationException(f"Invalid dispute status: {status}", field="status")
    return DisputeStatus(mapped)


class DisputeHandler:
    """
    Holds, releases or forfeits the earning behind a disputed transaction.

    ``open_dispute`` and ``apply_resolution`` run inside a caller's unit of
    work (the settlement processor); ``record`` and ``resolve`` are the
    standalone entry points for admin-reported disputes and manual resolution,
    each owning its lock and unit of work.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        locks: KeyedLock,
        *,
        conflict_attempts: int = 3,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.uow_factory = uow_factory
        self.locks = locks
        self.conflict_attempts = conflict_attempts
        self.notifier = notifier or NullNotifier()

    async def open_dispute(
        self,
        ctx: LedgerContext,
        transaction: Transaction,
        *,
        external_ref: str,
        status: DisputeStatus = DisputeStatus.NEEDS_RESPONSE,
        reason: Optional[str] = None,
        amount: Optional[int] = None,
    ) -> Dispute:
        """succeeded → disputed, record the dispute and hold the earning."""
        now = datetime.now(timezone.utc)
        await ctx.transactions.transition(
            transaction.id,
            TransactionStatus.DISPUTED,
            {"dispute_id": external_ref, "dispute_reason": reason, "disputed_at": now.isoformat()},
        )
        dispute = await ctx.uow.dispute_repository.create(Dispute(
            id=new_id(),
            transaction_id=transaction.id,
            external_ref=external_ref,
            amount=transaction.amount if amount is None else amount,
            status=status,
            reason=reason,
            created_at=now,
            updated_at=now,
        ))

        earning = await ctx.earnings.get_for_transaction(transaction.id)
        if earning is None:
            logger.error("dispute_earning_missing", transaction_id=transaction.id)
        elif earning.status == EarningStatus.PAID:
            # 已打款，只能线下追回
            logger.warning(
                "dispute_on_paid_earning",
                transaction_id=transaction.id,
                earning_id=earning.id,
                net_amount=earning.net_amount,
            )
        else:
            await ctx.earnings.hold(earning.id)

        ctx.events.append(DisputeOpened(
            transaction_id=transaction.id,
            external_ref=transaction.external_ref,
            dispute_id=dispute.id,
            creator_id=transaction.creator_id,
            amount=dispute.amount,
            reason=reason,
        ))
        logger.info(
            "dispute_opened",
            transaction_id=transaction.id,
            dispute_ref=external_ref,
            status=dispute.status.value,
        )
        return dispute

    async def apply_resolution(
        self,
        ctx: LedgerContext,
        transaction: Transaction,
        dispute: Dispute,
        outcome: DisputeStatus,
        resolution: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Transaction:
        """
        won → earning released, transaction back to succeeded;
        lost / charge_refunded → earning zeroed, transaction refunded.
        """
        outcome = _parse_outcome(outcome)
        dispute.resolve(outcome, resolution, actor_id)
        await ctx.uow.dispute_repository.update(dispute)

        extra = {
            "dispute_resolution": outcome.value,
            "dispute_resolved_at": dispute.resolved_at.isoformat(),
            "dispute_resolved_by": actor_id,
        }
        won = outcome == DisputeStatus.WON
        target = TransactionStatus.SUCCEEDED if won else TransactionStatus.REFUNDED
        if transaction.status == TransactionStatus.DISPUTED:
            transaction = await ctx.transactions.transition(transaction.id, target, extra)
        else:
            logger.warning(
                "dispute_resolution_unexpected_status",
                transaction_id=transaction.id,
                status=transaction.status.value,
            )

        earning = await ctx.earnings.get_for_transaction(transaction.id)
        if earning is None:
            logger.error("dispute_earning_missing", transaction_id=transaction.id)
        elif earning.status == EarningStatus.PAID:
            if not won:
                logger.warning(
                    "dispute_clawback_required",
                    transaction_id=transaction.id,
                    earning_id=earning.id,
                    net_amount=earning.net_amount,
                )
        elif won:
            if earning.status == EarningStatus.PENDING and not earning.is_forfeited:
                await ctx.earnings.release(earning.id)
        else:
            await ctx.earnings.zero(earning.id, reason=f"dispute_{outcome.value}")

        ctx.events.append(DisputeResolved(
            transaction_id=transaction.id,
            external_ref=transaction.external_ref,
            dispute_id=dispute.id,
            creator_id=transaction.creator_id,
            outcome=outcome.value,
        ))
        logger.info(
            "dispute_resolved",
            transaction_id=transaction.id,
            dispute_id=dispute.id,
            outcome=outcome.value,
            actor_id=actor_id,
        )
        return transaction

    async def record(
        self,
        transaction_id: str,
        external_ref: str,
        reason: Optional[str] = None,
        amount: Optional[int] = None,
        status: str | DisputeStatus = DisputeStatus.NEEDS_RESPONSE,
        actor_id: Optional[str] = None,
    ) -> Dispute:
        """
        Record a dispute reported outside the processor webhook.

        Accepts internal statuses and the processor's ``warning_*`` inquiry
        statuses. An open status holds the earning; a closed one is opened and
        resolved in the same unit of work. Recording an already known dispute
        reference returns it unchanged.
        """
        status = _parse_status(status)
        async with self.uow_factory(readonly=True) as uow:
            transaction = await uow.transaction_repository.get_by_id(transaction_id)
        if transaction is None:
            raise TransactionNotFoundException(f"id={transaction_id}")

        async def _apply():
            async with self.uow_factory() as uow:
                ctx = LedgerContext.bind(uow)
                existing = await uow.dispute_repository.get_by_external_ref(external_ref)
                if existing is not None:
                    if existing.transaction_id != transaction_id:
                        raise DomainValidationException(
                            "Dispute reference belongs to another transaction", field="external_ref",
                        )
                    return existing, []

                current = await ctx.transactions.get(transaction_id)
                if current.status != TransactionStatus.SUCCEEDED:
                    raise InvalidTransitionException(
                        current.status.value, TransactionStatus.DISPUTED.value, entity="transaction",
                    )
                dispute = await self.open_dispute(
                    ctx,
                    current,
                    external_ref=external_ref,
                    status=status if status in OPEN_DISPUTE_STATUSES else DisputeStatus.NEEDS_RESPONSE,
                    reason=reason,
                    amount=amount,
                )
                if status not in OPEN_DISPUTE_STATUSES:
                    current = await ctx.transactions.get(transaction_id)
                    await self.apply_resolution(ctx, current, dispute, status, f"manual:{status.value}", actor_id)
                await uow.commit()
            return dispute, ctx.collect_events()

        async with self.locks.acquire(lock_key(transaction.external_ref)):
            dispute, events = await retry_on_conflict(_apply, attempts=self.conflict_attempts)

        await publish_events(self.notifier, events)
        logger.info(
            "dispute_recorded",
            transaction_id=transaction_id,
            dispute_ref=external_ref,
            status=dispute.status.value,
            actor_id=actor_id,
        )
        return dispute

    async def resolve(
        self,
        transaction_id: str,
        outcome: str | DisputeStatus,
        resolution: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Transaction:
        """Manually resolve the open dispute on ``transaction_id``."""
        outcome = _parse_outcome(outcome)
        async with self.uow_factory(readonly=True) as uow:
            transaction = await uow.transaction_repository.get_by_id(transaction_id)
        if transaction is None:
            raise TransactionNotFoundException(f"id={transaction_id}")

        async def _apply():
            async with self.uow_factory() as uow:
                ctx = LedgerContext.bind(uow)
                current = await ctx.transactions.get(transaction_id)
                dispute = await uow.dispute_repository.get_active_for_transaction(transaction_id)
                if dispute is None:
                    raise NoActiveDisputeException(transaction_id)
                updated = await self.apply_resolution(ctx, current, dispute, outcome, resolution, actor_id)
                await uow.commit()
            return updated, ctx.collect_events()

        async with self.locks.acquire(lock_key(transaction.external_ref)):
            updated, events = await retry_on_conflict(_apply, attempts=self.conflict_attempts)

        await publish_events(self.notifier, events)
        return updated


"""
Settlement event processor.

Consumes processor notifications and drives the transaction/earnings ledgers.
Delivery is at-least-once and unordered, so every event is:

* serialised per external reference by a keyed lock,
* deduplicated by event id inside the same unit of work that applies it,
* applied only when the transaction is in a state the event can move forward;
  anything else is logged and recorded as ignored.

Orphan events (no local transaction yet) are retried with backoff and then
dead-lettered for replay by the periodic task. Dispute events that arrive
while the transaction is still pending are parked the same way and replayed
as soon as the payment settles.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from application.dtos.payments import (
    ProcessorEvent,
    SettlementEventType,
    SettlementOutcome,
    SettlementResult,
)
from application.ports.locks import KeyedLock
from application.ports.notifier import Notifier, NullNotifier
from application.services.dispute_service import DisputeHandler
from application.services.ledger_context import LedgerContext, UnitOfWorkFactory, publish_events
from application.utils.idempotency import lock_key
from application.utils.retry import retry_on_conflict
from core.logging_config import get_logger
from core.settings import LedgerSettings
from domain.common.exceptions import BusinessException
from domain.payment.entity import (
    DeadLetterEvent,
    DisputeStatus,
    OPEN_DISPUTE_STATUSES,
    ProcessedEvent,
    Transaction,
    TransactionStatus,
)
from domain.payment.exceptions import OrphanEventException


logger = get_logger(__name__)

Handler = Callable[[LedgerContext, Transaction, ProcessorEvent], Awaitable[SettlementOutcome]]


class SettlementEventProcessor:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        locks: KeyedLock,
        *,
        ledger_settings: Optional[LedgerSettings] = None,
        disputes: Optional[DisputeHandler] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.uow_factory = uow_factory
        self.locks = locks
        self.settings = ledger_settings or LedgerSettings()
        self.notifier = notifier or NullNotifier()
        self.disputes = disputes or DisputeHandler(
            uow_factory,
            locks,
            conflict_attempts=self.settings.conflict_max_attempts,
            notifier=self.notifier,
        )
        self._handlers: Dict[SettlementEventType, Handler] = {
            SettlementEventType.PAYMENT_SUCCEEDED: self._on_succeeded,
            SettlementEventType.PAYMENT_FAILED: self._on_failed,
            SettlementEventType.PAYMENT_CANCELED: self._on_failed,
            SettlementEventType.DISPUTE_CREATED: self._on_dispute_created,
            SettlementEventType.DISPUTE_UPDATED: self._on_dispute_updated,
            SettlementEventType.DISPUTE_CLOSED: self._on_dispute_closed,
        }

    # ------------------------------------------------------------------ entry points

    async def process(self, event: ProcessorEvent) -> SettlementResult:
        """Apply ``event`` exactly once. Raises OrphanEventException when no transaction matches."""
        async with self.locks.acquire(lock_key(event.external_ref)):
            result, events = await retry_on_conflict(
                lambda: self._apply_once(event),
                attempts=self.settings.conflict_max_attempts,
            )
        await publish_events(self.notifier, events)
        return result

    async def process_with_retry(self, event: ProcessorEvent) -> SettlementResult:
        """``process`` with bounded orphan retries, then dead-letter."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max(1, self.settings.orphan_max_attempts)),
                wait=wait_exponential(
                    multiplier=self.settings.orphan_base_backoff,
                    max=self.settings.orphan_max_backoff,
                ),
                retry=retry_if_exception_type(OrphanEventException),
                reraise=True,
            ):
                with attempt:
                    result = await self.process(event)
        except OrphanEventException as exc:
            await self._dead_letter(event, exc.message)
            return SettlementResult(
                event_id=event.event_id,
                event_type=event.event_type.value,
                outcome=SettlementOutcome.DEAD_LETTERED,
            )

        if event.event_type == SettlementEventType.PAYMENT_SUCCEEDED and result.outcome == SettlementOutcome.APPLIED:
            await self._replay_parked(event.external_ref)
        return result

    async def replay_dead_letters(self, limit: Optional[int] = None) -> dict:
        """Re-process unresolved dead letters; returns counters for the caller's log."""
        async with self.uow_factory(readonly=True) as uow:
            pending = await uow.dead_letter_repository.list_unresolved(
                limit=limit or self.settings.dead_letter_replay_batch,
                max_attempts=self.settings.dead_letter_max_replays,
            )
        return await self._replay(pending)

    async def _replay_parked(self, external_ref: str) -> None:
        # 支付成功前送达的争议事件在结算后立即重放，不等周期任务
        async with self.uow_factory(readonly=True) as uow:
            parked = await uow.dead_letter_repository.list_unresolved_for_ref(external_ref)
        if parked:
            stats = await self._replay(parked)
            logger.info("parked_events_replayed", external_ref=external_ref, **stats)

    async def _replay(self, letters: List[DeadLetterEvent]) -> dict:
        stats = {"replayed": 0, "resolved": 0, "still_orphaned": 0, "failed": 0}
        for letter in letters:
            stats["replayed"] += 1
            event = ProcessorEvent.from_payload(letter.payload)
            try:
                result = await self.process(event)
            except OrphanEventException as exc:
                stats["still_orphaned"] += 1
                await self._record_replay_attempt(letter.event_id, exc.message)
                continue
            except BusinessException as exc:
                stats["failed"] += 1
                logger.error(
                    "dead_letter_replay_failed",
                    event_id=letter.event_id,
                    error_type=exc.error_type,
                    error=exc.message,
                )
                await self._record_replay_attempt(letter.event_id, exc.message)
                continue
            stats["resolved"] += 1
            await self._resolve_dead_letter(letter.event_id)
            logger.info(
                "dead_letter_replayed",
                event_id=letter.event_id,
                outcome=result.outcome.value,
                duplicate=result.duplicate,
            )
        return stats

    # ------------------------------------------------------------------ unit of work

    async def _apply_once(self, event: ProcessorEvent) -> tuple[SettlementResult, List]:
        async with self.uow_factory() as uow:
            prior = await uow.processed_event_repository.get(event.event_id)
            if prior is not None:
                logger.info(
                    "settlement_event_duplicate",
                    event_id=event.event_id,
                    event_type=event.event_type.value,
                    outcome=prior.outcome,
                )
                return SettlementResult(
                    event_id=event.event_id,
                    event_type=prior.event_type,
                    outcome=SettlementOutcome(prior.outcome),
                    transaction_id=prior.transaction_id,
                    duplicate=True,
                ), []

            ctx = LedgerContext.bind(uow)
            transaction = await ctx.transactions.find_by_external_ref(event.external_ref)
            if transaction is None:
                logger.warning(
                    "settlement_event_orphan",
                    event_id=event.event_id,
                    event_type=event.event_type.value,
                    external_ref=event.external_ref,
                )
                raise OrphanEventException(event.event_id, event.external_ref)

            if event.event_type.is_dispute and transaction.status == TransactionStatus.PENDING:
                # 争议先于支付成功送达：不记为已处理，走重试/死信直到交易结算
                logger.warning(
                    "settlement_event_premature",
                    event_id=event.event_id,
                    event_type=event.event_type.value,
                    transaction_id=transaction.id,
                )
                raise OrphanEventException(
                    event.event_id,
                    event.external_ref,
                    message=f"Transaction for reference {event.external_ref} not settled yet",
                )

            outcome = await self._handlers[event.event_type](ctx, transaction, event)
            await uow.processed_event_repository.add(ProcessedEvent(
                event_id=event.event_id,
                event_type=event.event_type.value,
                external_ref=event.external_ref,
                outcome=outcome.value,
                transaction_id=transaction.id,
            ))
            await uow.commit()

        logger.info(
            "settlement_event_processed",
            event_id=event.event_id,
            event_type=event.event_type.value,
            transaction_id=transaction.id,
            outcome=outcome.value,
        )
        return SettlementResult(
            event_id=event.event_id,
            event_type=event.event_type.value,
            outcome=outcome,
            transaction_id=transaction.id,
        ), ctx.collect_events()

    def _ignore(self, transaction: Transaction, event: ProcessorEvent, reason: str) -> SettlementOutcome:
        logger.warning(
            "settlement_event_out_of_order",
            event_id=event.event_id,
            event_type=event.event_type.value,
            transaction_id=transaction.id,
            status=transaction.status.value,
            reason=reason,
        )
        return SettlementOutcome.IGNORED

    # ------------------------------------------------------------------ payment events

    async def _on_succeeded(self, ctx: LedgerContext, transaction: Transaction, event: ProcessorEvent) -> SettlementOutcome:
        if transaction.status == TransactionStatus.PENDING:
            extra = {"settled_by_event": event.event_id}
            if event.details.get("charge_id"):
                extra["charge_id"] = event.details["charge_id"]
            if event.details.get("payment_method"):
                extra["processor_payment_method"] = event.details["payment_method"]
            transaction = await ctx.transactions.transition(transaction.id, TransactionStatus.SUCCEEDED, extra)
            await self._settle(ctx, transaction)
            return SettlementOutcome.APPLIED

        if transaction.status == TransactionStatus.SUCCEEDED:
            # 前一次处理在开具收据/收益前中断
            if await self._settle(ctx, transaction):
                logger.warning("settlement_repaired", transaction_id=transaction.id, event_id=event.event_id)
                return SettlementOutcome.REPAIRED
            return SettlementOutcome.IGNORED

        return self._ignore(transaction, event, "transaction already past succeeded")

    async def _settle(self, ctx: LedgerContext, transaction: Transaction) -> bool:
        """Receipt + earning for a succeeded transaction; returns whether anything was created."""
        created = False
        if await ctx.receipts.get_for_transaction(transaction.id) is None:
            await ctx.receipts.issue(transaction)
            created = True
        if await ctx.earnings.get_for_transaction(transaction.id) is None:
            await ctx.earnings.open(
                transaction_id=transaction.id,
                creator_id=transaction.creator_id,
                item_id=transaction.item_id,
                gross_amount=transaction.amount,
                platform_fee=transaction.platform_fee,
            )
            created = True
        return created

    async def _on_failed(self, ctx: LedgerContext, transaction: Transaction, event: ProcessorEvent) -> SettlementOutcome:
        if transaction.status != TransactionStatus.PENDING:
            return self._ignore(transaction, event, "only pending transactions can fail or cancel")
        target = (
            TransactionStatus.CANCELED
            if event.event_type == SettlementEventType.PAYMENT_CANCELED
            else TransactionStatus.FAILED
        )
        await ctx.transactions.transition(
            transaction.id,
            target,
            {"settled_by_event": event.event_id},
            failure_reason=event.details.get("failure_reason"),
        )
        return SettlementOutcome.APPLIED

    # ------------------------------------------------------------------ dispute events

    async def _on_dispute_created(self, ctx: LedgerContext, transaction: Transaction, event: ProcessorEvent) -> SettlementOutcome:
        dispute_ref = event.details["dispute_id"]
        if await ctx.uow.dispute_repository.get_by_external_ref(dispute_ref) is not None:
            return SettlementOutcome.IGNORED
        if transaction.status != TransactionStatus.SUCCEEDED:
            return self._ignore(transaction, event, "only succeeded transactions can be disputed")

        status = DisputeStatus(event.details["dispute_status"])
        await self.disputes.open_dispute(
            ctx,
            transaction,
            external_ref=dispute_ref,
            status=status if status in OPEN_DISPUTE_STATUSES else DisputeStatus.NEEDS_RESPONSE,
            reason=event.details.get("dispute_reason"),
            amount=event.details.get("amount"),
        )
        if status not in OPEN_DISPUTE_STATUSES:
            # 创建事件迟到，争议已结案
            return await self._on_dispute_closed(ctx, transaction, event)
        return SettlementOutcome.APPLIED

    async def _on_dispute_updated(self, ctx: LedgerContext, transaction: Transaction, event: ProcessorEvent) -> SettlementOutcome:
        status = DisputeStatus(event.details["dispute_status"])
        if status not in OPEN_DISPUTE_STATUSES:
            return await self._on_dispute_closed(ctx, transaction, event)

        dispute = await ctx.uow.dispute_repository.get_by_external_ref(event.details["dispute_id"])
        if dispute is None:
            # 更新先于创建送达
            return await self._on_dispute_created(ctx, transaction, event)
        if not dispute.is_active:
            return self._ignore(transaction, event, "dispute already resolved")
        if dispute.update_status(status):
            await ctx.uow.dispute_repository.update(dispute)
            return SettlementOutcome.APPLIED
        return SettlementOutcome.IGNORED

    async def _on_dispute_closed(self, ctx: LedgerContext, transaction: Transaction, event: ProcessorEvent) -> SettlementOutcome:
        dispute = await ctx.uow.dispute_repository.get_by_external_ref(event.details["dispute_id"])
        if dispute is None and transaction.status == TransactionStatus.SUCCEEDED:
            # 只收到结案事件：先登记争议再结案
            return await self._on_dispute_created(ctx, transaction, event)
        if dispute is None or not dispute.is_active:
            return self._ignore(transaction, event, "no open dispute")
        transaction = await ctx.transactions.get(transaction.id)
        await self.disputes.apply_resolution(
            ctx,
            transaction,
            dispute,
            DisputeStatus(event.details["dispute_status"]),
            resolution=f"processor:{event.details['dispute_status']}",
        )
        return SettlementOutcome.APPLIED

    # ------------------------------------------------------------------ dead letters

    async def _dead_letter(self, event: ProcessorEvent, reason: str) -> None:
        async with self.uow_factory() as uow:
            letter = await uow.dead_letter_repository.get(event.event_id)
            now = datetime.now(timezone.utc)
            if letter is None:
                letter = DeadLetterEvent(
                    event_id=event.event_id,
                    event_type=event.event_type.value,
                    external_ref=event.external_ref,
                    payload=event.to_payload(),
                    reason=reason,
                    created_at=now,
                    last_attempt_at=now,
                )
            else:
                letter.record_attempt(reason)
            await uow.dead_letter_repository.save(letter)
        logger.error(
            "settlement_event_dead_lettered",
            event_id=event.event_id,
            event_type=event.event_type.value,
            external_ref=event.external_ref,
            attempts=letter.attempts,
        )

    async def _record_replay_attempt(self, event_id: str, reason: str) -> None:
        async with self.uow_factory() as uow:
            letter = await uow.dead_letter_repository.get(event_id)
            if letter is not None:
                letter.record_attempt(reason)
                await uow.dead_letter_repository.save(letter)

    async def _resolve_dead_letter(self, event_id: str) -> None:
        async with self.uow_factory() as uow:
            letter = await uow.dead_letter_repository.get(event_id)
            if letter is not None and not letter.is_resolved:
                letter.mark_resolved()
                await uow.dead_letter_repository.save(letter)

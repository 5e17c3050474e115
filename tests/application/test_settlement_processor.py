import asyncio

import pytest
from sqlalchemy import func, select

from application.dtos.payments import SettlementOutcome
from application.services.ledger_context import LedgerContext
from application.services.settlement_service import SettlementEventProcessor
from core.settings import LedgerSettings
from domain.payment.entity import EarningStatus, TransactionStatus
from domain.payment.exceptions import OrphanEventException
from infrastructure.models.payment import EarningModel, ReceiptModel


async def _state(uow_factory, transaction_id):
    async with uow_factory(readonly=True) as uow:
        tx = await uow.transaction_repository.get_by_id(transaction_id)
        earning = await uow.earning_repository.get_by_transaction_id(transaction_id)
        receipt = await uow.receipt_repository.get_by_transaction_id(transaction_id)
    return tx, earning, receipt


@pytest.mark.asyncio
async def test_success_event_settles_transaction(payment_service, purchase, make_event, uow_factory, notifier):
    tx = await purchase(settle=False)
    result = await payment_service.settlement.process(
        make_event("payment.succeeded", tx.external_ref, charge_id="ch_9", payment_method="card")
    )

    assert result.outcome == SettlementOutcome.APPLIED
    assert result.transaction_id == tx.id
    tx, earning, receipt = await _state(uow_factory, tx.id)
    assert tx.status == TransactionStatus.SUCCEEDED
    assert tx.metadata["charge_id"] == "ch_9"
    assert earning.status == EarningStatus.AVAILABLE
    assert earning.net_amount == 850
    assert receipt.receipt_number == tx.receipt_number
    assert receipt.item_title == "Brush Pack"
    assert receipt.creator_name == "Ana"
    assert notifier.names() == ["TransactionSucceeded", "EarningOpened"]


@pytest.mark.asyncio
async def test_duplicate_event_is_applied_once(payment_service, purchase, make_event, uow_factory, notifier):
    tx = await purchase(settle=False)
    event = make_event("payment.succeeded", tx.external_ref, event_id="evt_dup")

    first = await payment_service.settlement.process(event)
    second = await payment_service.settlement.process(event)

    assert first.duplicate is False
    assert second.duplicate is True
    assert second.outcome == first.outcome == SettlementOutcome.APPLIED
    assert notifier.names().count("EarningOpened") == 1


@pytest.mark.asyncio
async def test_concurrent_duplicates_serialise(payment_service, purchase, make_event, uow_factory):
    tx = await purchase(settle=False)
    event = make_event("payment.succeeded", tx.external_ref, event_id="evt_race")

    results = await asyncio.gather(*(payment_service.settlement.process(event) for _ in range(3)))

    assert sorted(r.duplicate for r in results) == [False, True, True]
    _, earning, _ = await _state(uow_factory, tx.id)
    assert earning.net_amount == 850


@pytest.mark.asyncio
async def test_distinct_success_events_do_not_double_credit(payment_service, purchase, make_event, uow_factory):
    tx = await purchase()
    result = await payment_service.settlement.process(make_event("payment.succeeded", tx.external_ref))

    assert result.outcome == SettlementOutcome.IGNORED
    async with uow_factory(readonly=True) as uow:
        totals = await LedgerContext.bind(uow).earnings.totals_for_creator("creator-1")
    assert totals.total == 850


@pytest.mark.asyncio
async def test_failure_after_success_is_ignored(payment_service, purchase, make_event, uow_factory):
    tx = await purchase()
    result = await payment_service.settlement.process(
        make_event("payment.failed", tx.external_ref, failure_reason="card_declined")
    )

    assert result.outcome == SettlementOutcome.IGNORED
    tx, earning, _ = await _state(uow_factory, tx.id)
    assert tx.status == TransactionStatus.SUCCEEDED
    assert earning.status == EarningStatus.AVAILABLE


@pytest.mark.asyncio
async def test_success_after_failure_is_ignored(payment_service, purchase, make_event, uow_factory):
    tx = await purchase(settle=False)
    await payment_service.settlement.process(
        make_event("payment.failed", tx.external_ref, failure_reason="card_declined")
    )
    result = await payment_service.settlement.process(make_event("payment.succeeded", tx.external_ref))

    assert result.outcome == SettlementOutcome.IGNORED
    tx, earning, receipt = await _state(uow_factory, tx.id)
    assert tx.status == TransactionStatus.FAILED
    assert tx.failure_reason == "card_declined"
    assert earning is None and receipt is None


@pytest.mark.asyncio
async def test_cancel_event_moves_pending_to_canceled(payment_service, purchase, make_event, uow_factory):
    tx = await purchase(settle=False)
    await payment_service.settlement.process(
        make_event("payment.canceled", tx.external_ref, failure_reason="abandoned")
    )
    tx, _, _ = await _state(uow_factory, tx.id)
    assert tx.status == TransactionStatus.CANCELED


@pytest.mark.asyncio
async def test_redelivered_success_repairs_missing_earning(payment_service, purchase, make_event, uow_factory):
    tx = await purchase(settle=False)
    # 模拟中断：交易已成功但收益与收据未写入
    async with uow_factory() as uow:
        await LedgerContext.bind(uow).transactions.transition(tx.id, TransactionStatus.SUCCEEDED)

    result = await payment_service.settlement.process(make_event("payment.succeeded", tx.external_ref))

    assert result.outcome == SettlementOutcome.REPAIRED
    _, earning, receipt = await _state(uow_factory, tx.id)
    assert earning is not None and receipt is not None


@pytest.mark.asyncio
async def test_orphan_event_raises_from_process(payment_service, make_event):
    with pytest.raises(OrphanEventException):
        await payment_service.settlement.process(make_event("payment.succeeded", "pi_unknown"))


@pytest.mark.asyncio
async def test_orphan_event_is_dead_lettered_then_replayed(payment_service, make_event, uow_factory):
    event = make_event("payment.succeeded", "pi_late", event_id="evt_late")

    result = await payment_service.settlement.process_with_retry(event)

    assert result.outcome == SettlementOutcome.DEAD_LETTERED
    async with uow_factory(readonly=True) as uow:
        letter = await uow.dead_letter_repository.get("evt_late")
        assert await uow.processed_event_repository.get("evt_late") is None
    assert letter.payload["external_ref"] == "pi_late"
    assert not letter.is_resolved

    stats = await payment_service.replay_dead_letters()
    assert stats == {"replayed": 1, "resolved": 0, "still_orphaned": 1, "failed": 0}

    # 本地交易随后才落库
    async with uow_factory() as uow:
        tx = await LedgerContext.bind(uow).transactions.create(
            buyer_id="buyer-1",
            item_id="item-1",
            creator_id="creator-1",
            amount=1000,
            currency="USD",
            external_ref="pi_late",
            platform_fee=150,
            creator_revenue=850,
        )

    stats = await payment_service.replay_dead_letters()
    assert stats["resolved"] == 1
    async with uow_factory(readonly=True) as uow:
        letter = await uow.dead_letter_repository.get("evt_late")
    assert letter.is_resolved
    assert letter.attempts == 2
    tx, earning, _ = await _state(uow_factory, tx.id)
    assert tx.status == TransactionStatus.SUCCEEDED
    assert earning is not None

    # 已解决的死信不再重放
    assert (await payment_service.replay_dead_letters())["replayed"] == 0


@pytest.mark.asyncio
async def test_replay_stops_after_max_attempts(uow_factory, locks, make_event, notifier):
    processor = SettlementEventProcessor(
        uow_factory,
        locks,
        ledger_settings=LedgerSettings(
            orphan_max_attempts=1, orphan_base_backoff=0, orphan_max_backoff=0, dead_letter_max_replays=2,
        ),
        notifier=notifier,
    )
    await processor.process_with_retry(make_event("payment.failed", "pi_never", event_id="evt_never"))

    assert (await processor.replay_dead_letters())["still_orphaned"] == 1
    assert (await processor.replay_dead_letters())["replayed"] == 0


async def _count(uow_factory, model, transaction_id):
    async with uow_factory(readonly=True) as uow:
        result = await uow.session.execute(
            select(func.count()).select_from(model).where(model.transaction_id == transaction_id)
        )
        return result.scalar_one()


@pytest.mark.asyncio
async def test_success_after_full_refund_is_a_no_op(payment_service, purchase, make_event, uow_factory, notifier):
    tx = await purchase()
    await payment_service.request_refund(tx.id)
    opened = notifier.names().count("EarningOpened")

    result = await payment_service.settlement.process(make_event("payment.succeeded", tx.external_ref))

    assert result.outcome == SettlementOutcome.IGNORED
    tx, earning, _ = await _state(uow_factory, tx.id)
    assert tx.status == TransactionStatus.REFUNDED
    assert earning.net_amount == 0
    assert earning.status == EarningStatus.PENDING
    assert notifier.names().count("EarningOpened") == opened


@pytest.mark.asyncio
async def test_concurrent_distinct_success_events_settle_once(payment_service, purchase, make_event, uow_factory):
    tx = await purchase(settle=False)
    events = [make_event("payment.succeeded", tx.external_ref) for _ in range(4)]

    results = await asyncio.gather(*(payment_service.settlement.process(e) for e in events))

    assert sorted(r.outcome.value for r in results) == ["applied", "ignored", "ignored", "ignored"]
    assert not any(r.duplicate for r in results)
    assert await _count(uow_factory, EarningModel, tx.id) == 1
    assert await _count(uow_factory, ReceiptModel, tx.id) == 1
    _, earning, _ = await _state(uow_factory, tx.id)
    assert earning.net_amount == 850


@pytest.mark.asyncio
async def test_earnings_balance_against_gross(payment_service, purchase, uow_factory):
    first = await purchase("buyer-1", "item-1")
    second = await purchase("buyer-1", "item-2")
    refunded = await purchase("buyer-2", "item-1")
    await payment_service.request_refund(second.id, amount=500)
    await payment_service.request_refund(refunded.id)

    async with uow_factory(readonly=True) as uow:
        rows = (await uow.session.execute(select(EarningModel))).scalars().all()
        transactions = {
            t.id: t for t in [
                await uow.transaction_repository.get_by_id(tx_id)
                for tx_id in (first.id, second.id, refunded.id)
            ]
        }

    kept = [r for r in rows if r.forfeited_at is None]
    zeroed = [r for r in rows if r.forfeited_at is not None]
    assert {r.transaction_id for r in zeroed} == {refunded.id}
    assert all(r.net_amount == 0 for r in zeroed)
    assert sum(r.net_amount for r in kept) + sum(r.platform_fee for r in kept) == sum(r.gross_amount for r in kept)
    for row in rows:
        tx = transactions[row.transaction_id]
        assert row.gross_amount == tx.amount
        assert row.platform_fee == tx.platform_fee

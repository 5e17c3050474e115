import pytest

from application.dtos.payments import SettlementOutcome
from domain.common.exceptions import DomainValidationException
from domain.payment.entity import DisputeStatus, EarningStatus, TransactionStatus
from domain.payment.exceptions import (
    InvalidTransitionException,
    NoActiveDisputeException,
    OrphanEventException,
    TransactionNotFoundException,
)


def _dispute_event(make_event, event_type, tx, status, dispute_id="dp_1", **extra):
    return make_event(
        event_type,
        tx.external_ref,
        dispute_id=dispute_id,
        dispute_status=status,
        dispute_reason=extra.pop("reason", "fraudulent"),
        amount=extra.pop("amount", tx.amount),
        **extra,
    )


async def _ledger(uow_factory, tx):
    async with uow_factory(readonly=True) as uow:
        transaction = await uow.transaction_repository.get_by_id(tx.id)
        earning = await uow.earning_repository.get_by_transaction_id(tx.id)
        dispute = await uow.dispute_repository.get_by_external_ref("dp_1")
    return transaction, earning, dispute


@pytest.mark.asyncio
async def test_dispute_opened_holds_earning(payment_service, purchase, make_event, uow_factory, notifier):
    tx = await purchase()
    result = await payment_service.settlement.process(
        _dispute_event(make_event, "dispute.created", tx, "needs_response")
    )

    assert result.outcome == SettlementOutcome.APPLIED
    tx, earning, dispute = await _ledger(uow_factory, tx)
    assert tx.status == TransactionStatus.DISPUTED
    assert tx.metadata["dispute_id"] == "dp_1"
    assert earning.status == EarningStatus.PENDING
    assert earning.net_amount == 850
    assert dispute.status == DisputeStatus.NEEDS_RESPONSE
    assert dispute.reason == "fraudulent"
    assert notifier.names()[-1] == "DisputeOpened"


@pytest.mark.asyncio
async def test_dispute_won_releases_earning(payment_service, purchase, make_event, uow_factory):
    tx = await purchase()
    await payment_service.settlement.process(_dispute_event(make_event, "dispute.created", tx, "needs_response"))
    await payment_service.settlement.process(_dispute_event(make_event, "dispute.closed", tx, "won"))

    tx, earning, dispute = await _ledger(uow_factory, tx)
    assert tx.status == TransactionStatus.SUCCEEDED
    assert tx.metadata["dispute_resolution"] == "won"
    assert earning.status == EarningStatus.AVAILABLE
    assert earning.net_amount == 850
    assert dispute.status == DisputeStatus.WON
    assert dispute.resolution == "processor:won"


@pytest.mark.parametrize("outcome", ["lost", "charge_refunded"])
@pytest.mark.asyncio
async def test_dispute_lost_forfeits_earning(payment_service, purchase, make_event, uow_factory, outcome):
    tx = await purchase()
    await payment_service.settlement.process(_dispute_event(make_event, "dispute.created", tx, "needs_response"))
    await payment_service.settlement.process(_dispute_event(make_event, "dispute.closed", tx, outcome))

    tx, earning, dispute = await _ledger(uow_factory, tx)
    assert tx.status == TransactionStatus.REFUNDED
    assert earning.net_amount == 0
    assert earning.status == EarningStatus.PENDING
    assert dispute.status == DisputeStatus(outcome)


@pytest.mark.asyncio
async def test_dispute_update_moves_to_under_review(payment_service, purchase, make_event, uow_factory):
    tx = await purchase()
    await payment_service.settlement.process(_dispute_event(make_event, "dispute.created", tx, "needs_response"))
    result = await payment_service.settlement.process(
        _dispute_event(make_event, "dispute.updated", tx, "under_review")
    )

    assert result.outcome == SettlementOutcome.APPLIED
    tx, earning, dispute = await _ledger(uow_factory, tx)
    assert dispute.status == DisputeStatus.UNDER_REVIEW
    assert tx.status == TransactionStatus.DISPUTED
    assert earning.status == EarningStatus.PENDING


@pytest.mark.asyncio
async def test_duplicate_dispute_creation_is_ignored(payment_service, purchase, make_event, uow_factory):
    tx = await purchase()
    await payment_service.settlement.process(_dispute_event(make_event, "dispute.created", tx, "needs_response"))
    result = await payment_service.settlement.process(
        _dispute_event(make_event, "dispute.created", tx, "needs_response")
    )
    assert result.outcome == SettlementOutcome.IGNORED


@pytest.mark.asyncio
async def test_close_without_prior_create_opens_then_resolves(payment_service, purchase, make_event, uow_factory):
    tx = await purchase()
    result = await payment_service.settlement.process(_dispute_event(make_event, "dispute.closed", tx, "lost"))

    assert result.outcome == SettlementOutcome.APPLIED
    tx, earning, dispute = await _ledger(uow_factory, tx)
    assert tx.status == TransactionStatus.REFUNDED
    assert earning.net_amount == 0
    assert dispute.status == DisputeStatus.LOST


@pytest.mark.asyncio
async def test_dispute_on_pending_transaction_is_not_recorded(payment_service, purchase, make_event, uow_factory):
    tx = await purchase(settle=False)
    event = _dispute_event(make_event, "dispute.created", tx, "needs_response")

    with pytest.raises(OrphanEventException):
        await payment_service.settlement.process(event)

    async with uow_factory(readonly=True) as uow:
        assert await uow.processed_event_repository.get(event.event_id) is None
    tx, _, dispute = await _ledger(uow_factory, tx)
    assert tx.status == TransactionStatus.PENDING
    assert dispute is None


@pytest.mark.asyncio
async def test_dispute_before_success_holds_earning_once_settled(payment_service, purchase, make_event, uow_factory):
    tx = await purchase(settle=False)
    dispute_event = _dispute_event(make_event, "dispute.created", tx, "needs_response", event_id="evt_early")

    parked = await payment_service.settlement.process_with_retry(dispute_event)
    assert parked.outcome == SettlementOutcome.DEAD_LETTERED

    settled = await payment_service.settlement.process_with_retry(
        make_event("payment.succeeded", tx.external_ref, charge_id="ch_1")
    )
    assert settled.outcome == SettlementOutcome.APPLIED

    tx, earning, dispute = await _ledger(uow_factory, tx)
    assert tx.status == TransactionStatus.DISPUTED
    assert earning.status == EarningStatus.PENDING
    assert earning.net_amount == 850
    assert dispute.status == DisputeStatus.NEEDS_RESPONSE
    async with uow_factory(readonly=True) as uow:
        letter = await uow.dead_letter_repository.get("evt_early")
    assert letter.is_resolved

    # 处理方重投同一事件：已处理
    redelivered = await payment_service.settlement.process_with_retry(dispute_event)
    assert redelivered.duplicate is True
    with pytest.raises(InvalidTransitionException):
        await payment_service.mark_earning_paid(earning.id)


@pytest.mark.asyncio
async def test_parked_dispute_is_replayed_by_periodic_task(payment_service, purchase, make_event, uow_factory):
    tx = await purchase(settle=False)
    await payment_service.settlement.process_with_retry(
        _dispute_event(make_event, "dispute.created", tx, "needs_response", event_id="evt_parked")
    )
    # 成功事件经 process 直接处理（未触发即时重放）
    await payment_service.settlement.process(make_event("payment.succeeded", tx.external_ref))

    stats = await payment_service.replay_dead_letters()

    assert stats["resolved"] == 1
    tx, earning, _ = await _ledger(uow_factory, tx)
    assert tx.status == TransactionStatus.DISPUTED
    assert earning.status == EarningStatus.PENDING


@pytest.mark.asyncio
async def test_recorded_dispute_holds_earning(payment_service, purchase, uow_factory, notifier):
    tx = await purchase()

    dispute = await payment_service.record_dispute(
        tx.id, "dp_1", reason="product_not_received", amount=1000, status="needs_response", actor_id="admin-1",
    )

    assert dispute.status == DisputeStatus.NEEDS_RESPONSE
    assert dispute.amount == 1000
    tx, earning, stored = await _ledger(uow_factory, tx)
    assert tx.status == TransactionStatus.DISPUTED
    assert earning.status == EarningStatus.PENDING
    assert stored.id == dispute.id
    assert notifier.names()[-1] == "DisputeOpened"

    again = await payment_service.record_dispute(tx.id, "dp_1", status="under_review")
    assert again.id == dispute.id
    assert again.status == DisputeStatus.NEEDS_RESPONSE


@pytest.mark.parametrize(
    "status,expected",
    [
        ("warning_needs_response", DisputeStatus.NEEDS_RESPONSE),
        ("warning_under_review", DisputeStatus.UNDER_REVIEW),
    ],
)
@pytest.mark.asyncio
async def test_recorded_inquiry_status_is_normalised(payment_service, purchase, uow_factory, status, expected):
    tx = await purchase()

    dispute = await payment_service.record_dispute(tx.id, "dp_1", status=status)

    assert dispute.status == expected
    _, earning, _ = await _ledger(uow_factory, tx)
    assert earning.status == EarningStatus.PENDING


@pytest.mark.asyncio
async def test_recorded_closed_dispute_is_resolved(payment_service, purchase, uow_factory):
    tx = await purchase()

    dispute = await payment_service.record_dispute(tx.id, "dp_1", status="lost", actor_id="admin-1")

    assert dispute.status == DisputeStatus.LOST
    assert dispute.resolution == "manual:lost"
    tx, earning, _ = await _ledger(uow_factory, tx)
    assert tx.status == TransactionStatus.REFUNDED
    assert earning.net_amount == 0


@pytest.mark.asyncio
async def test_record_dispute_validation(payment_service, purchase):
    pending = await purchase(item_id="item-2", settle=False)
    with pytest.raises(InvalidTransitionException):
        await payment_service.record_dispute(pending.id, "dp_1")
    with pytest.raises(TransactionNotFoundException):
        await payment_service.record_dispute("missing", "dp_1")

    tx = await purchase()
    with pytest.raises(DomainValidationException):
        await payment_service.record_dispute(tx.id, "dp_1", status="escalated")


@pytest.mark.asyncio
async def test_manual_resolution(payment_service, purchase, make_event, uow_factory, notifier):
    tx = await purchase()
    await payment_service.settlement.process(_dispute_event(make_event, "dispute.created", tx, "needs_response"))

    updated = await payment_service.resolve_dispute(tx.id, "won", "evidence accepted", "admin-1")

    assert updated.status == TransactionStatus.SUCCEEDED
    _, earning, dispute = await _ledger(uow_factory, tx)
    assert earning.status == EarningStatus.AVAILABLE
    assert dispute.resolved_by == "admin-1"
    assert dispute.resolution == "evidence accepted"
    assert notifier.names()[-1] == "DisputeResolved"

    with pytest.raises(NoActiveDisputeException):
        await payment_service.resolve_dispute(tx.id, "lost")


@pytest.mark.asyncio
async def test_manual_resolution_rejects_open_status(payment_service, purchase):
    tx = await purchase()
    with pytest.raises(DomainValidationException):
        await payment_service.resolve_dispute(tx.id, "under_review")


@pytest.mark.asyncio
async def test_lost_dispute_on_paid_earning_keeps_payout(payment_service, purchase, make_event, uow_factory):
    tx = await purchase()
    _, earning, _ = await _ledger(uow_factory, tx)
    await payment_service.mark_earning_paid(earning.id)

    await payment_service.settlement.process(_dispute_event(make_event, "dispute.created", tx, "needs_response"))
    await payment_service.settlement.process(_dispute_event(make_event, "dispute.closed", tx, "lost"))

    tx, earning, _ = await _ledger(uow_factory, tx)
    assert tx.status == TransactionStatus.REFUNDED
    assert earning.status == EarningStatus.PAID
    assert earning.net_amount == 850

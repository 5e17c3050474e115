import pytest

from domain.payment.entity import EarningStatus, RefundReason, RefundStatus, TransactionStatus
from domain.payment.exceptions import (
    ExternalProcessorError,
    InvalidAmountException,
    TransactionNotFoundException,
)
from infrastructure.external.payments.exceptions import PaymentProviderError


async def _ledger(uow_factory, transaction_id):
    async with uow_factory(readonly=True) as uow:
        tx = await uow.transaction_repository.get_by_id(transaction_id)
        earning = await uow.earning_repository.get_by_transaction_id(transaction_id)
        refunds = await uow.refund_repository.list_by_transaction(transaction_id)
    return tx, earning, refunds


@pytest.mark.asyncio
async def test_partial_refund_keeps_earning(payment_service, purchase, gateway, uow_factory, notifier):
    tx = await purchase()
    refund = await payment_service.request_refund(tx.id, 300, RefundReason.DUPLICATE, "support-1")

    assert refund.amount == 300
    assert refund.status == RefundStatus.SUCCEEDED
    assert refund.external_ref == "re_1"
    assert gateway.refunds[0].intent_id == tx.external_ref
    assert gateway.refunds[0].reason == "duplicate"

    tx, earning, refunds = await _ledger(uow_factory, tx.id)
    assert tx.status == TransactionStatus.PARTIALLY_REFUNDED
    assert tx.refunded_amount == 300
    assert tx.metadata["refunded_by"] == "support-1"
    assert earning.status == EarningStatus.AVAILABLE
    assert earning.net_amount == 850
    assert [r.id for r in refunds] == [refund.id]
    assert notifier.names()[-1] == "TransactionRefunded"


@pytest.mark.asyncio
async def test_full_refund_forfeits_earning(payment_service, purchase, uow_factory, notifier):
    tx = await purchase()
    refund = await payment_service.request_refund(tx.id)

    assert refund.amount == 1000
    tx, earning, _ = await _ledger(uow_factory, tx.id)
    assert tx.status == TransactionStatus.REFUNDED
    assert earning.net_amount == 0
    assert earning.status == EarningStatus.PENDING
    assert "EarningForfeited" in notifier.names()


@pytest.mark.asyncio
async def test_successive_partial_refunds_reach_refunded(payment_service, purchase, gateway, uow_factory):
    tx = await purchase()
    await payment_service.request_refund(tx.id, 400)
    await payment_service.request_refund(tx.id, 400)
    await payment_service.request_refund(tx.id)

    tx, earning, refunds = await _ledger(uow_factory, tx.id)
    assert tx.status == TransactionStatus.REFUNDED
    assert tx.refunded_amount == 1000
    assert [r.amount for r in sorted(refunds, key=lambda r: r.created_at)] == [400, 400, 200]
    assert earning.net_amount == 0
    # 每次退款的幂等键都不同
    assert len({r.idempotency_key for r in gateway.refunds}) == 3


@pytest.mark.asyncio
async def test_over_refund_is_rejected_before_processor_call(payment_service, purchase, gateway, uow_factory):
    tx = await purchase()
    await payment_service.request_refund(tx.id, 900)

    with pytest.raises(InvalidAmountException) as exc:
        await payment_service.request_refund(tx.id, 200)

    assert exc.value.details["remaining"] == 100
    assert len(gateway.refunds) == 1
    tx, _, _ = await _ledger(uow_factory, tx.id)
    assert tx.refunded_amount == 900


@pytest.mark.asyncio
async def test_pending_transaction_cannot_be_refunded(payment_service, purchase, gateway):
    tx = await purchase(settle=False)
    with pytest.raises(InvalidAmountException):
        await payment_service.request_refund(tx.id, 100)
    assert gateway.refunds == []


@pytest.mark.asyncio
async def test_unknown_transaction(payment_service):
    with pytest.raises(TransactionNotFoundException):
        await payment_service.request_refund("missing", 100)


@pytest.mark.asyncio
async def test_processor_error_records_failed_refund(payment_service, purchase, gateway, uow_factory):
    tx = await purchase()
    gateway.refund_error = PaymentProviderError("charge already refunded", provider="stripe")

    with pytest.raises(ExternalProcessorError):
        await payment_service.request_refund(tx.id, 500)

    tx, earning, refunds = await _ledger(uow_factory, tx.id)
    assert tx.status == TransactionStatus.SUCCEEDED
    assert tx.refunded_amount == 0
    assert earning.net_amount == 850
    assert [r.status for r in refunds] == [RefundStatus.FAILED]
    assert refunds[0].failure_reason == "charge already refunded"


@pytest.mark.asyncio
async def test_processor_rejection_status_is_an_error(payment_service, purchase, gateway, uow_factory):
    tx = await purchase()
    gateway.refund_status = "failed"

    with pytest.raises(ExternalProcessorError):
        await payment_service.request_refund(tx.id, 500)

    tx, _, refunds = await _ledger(uow_factory, tx.id)
    assert tx.refunded_amount == 0
    assert refunds[0].status == RefundStatus.FAILED
    assert refunds[0].external_ref == "re_1"


@pytest.mark.asyncio
async def test_processor_pending_refund_counts_immediately(payment_service, purchase, gateway, uow_factory):
    tx = await purchase()
    gateway.refund_status = "pending"

    refund = await payment_service.request_refund(tx.id, 250)

    assert refund.status == RefundStatus.PENDING
    tx, _, _ = await _ledger(uow_factory, tx.id)
    assert tx.refunded_amount == 250


@pytest.mark.asyncio
async def test_full_refund_of_paid_earning_leaves_payout_intact(payment_service, purchase, uow_factory):
    tx = await purchase()
    _, earning, _ = await _ledger(uow_factory, tx.id)
    await payment_service.mark_earning_paid(earning.id)

    await payment_service.request_refund(tx.id)

    tx, earning, _ = await _ledger(uow_factory, tx.id)
    assert tx.status == TransactionStatus.REFUNDED
    assert earning.status == EarningStatus.PAID
    assert earning.net_amount == 850

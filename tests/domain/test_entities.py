from datetime import datetime, timezone

import pytest

from domain.common.exceptions import DomainValidationException
from domain.payment.entity import (
    Dispute,
    DisputeStatus,
    Earning,
    EarningStatus,
    EarningsPeriod,
    PeriodKind,
    Transaction,
    TransactionStatus,
)
from domain.payment.exceptions import InvalidAmountException, InvalidTransitionException


def _transaction(**overrides):
    values = dict(
        id="tx-1",
        buyer_id="buyer-1",
        item_id="item-1",
        creator_id="creator-1",
        amount=1000,
        currency="usd",
        platform_fee=150,
        creator_revenue=850,
        external_ref="pi_1",
    )
    values.update(overrides)
    return Transaction(**values)


def _earning(**overrides):
    values = dict(
        id="earn-1",
        creator_id="creator-1",
        transaction_id="tx-1",
        item_id="item-1",
        gross_amount=1000,
        platform_fee=150,
        net_amount=850,
    )
    values.update(overrides)
    return Earning(**values)


def test_transaction_normalises_currency_and_defaults_to_pending():
    tx = _transaction()
    assert tx.currency == "USD"
    assert tx.status == TransactionStatus.PENDING
    assert tx.remaining_refundable == 1000


def test_transaction_split_must_sum_to_amount():
    with pytest.raises(DomainValidationException) as exc:
        _transaction(platform_fee=100)
    assert exc.value.field == "amount"


@pytest.mark.parametrize("amount", [0, -5, 10.0])
def test_transaction_amount_must_be_positive_integer(amount):
    with pytest.raises(DomainValidationException):
        _transaction(amount=amount, platform_fee=0, creator_revenue=amount)


def test_transaction_rejects_bad_currency():
    with pytest.raises(DomainValidationException) as exc:
        _transaction(currency="US1")
    assert exc.value.field == "currency"


@pytest.mark.parametrize(
    "current, target",
    [
        (TransactionStatus.PENDING, TransactionStatus.SUCCEEDED),
        (TransactionStatus.PENDING, TransactionStatus.FAILED),
        (TransactionStatus.PENDING, TransactionStatus.CANCELED),
        (TransactionStatus.SUCCEEDED, TransactionStatus.DISPUTED),
        (TransactionStatus.SUCCEEDED, TransactionStatus.REFUNDED),
        (TransactionStatus.PARTIALLY_REFUNDED, TransactionStatus.PARTIALLY_REFUNDED),
        (TransactionStatus.DISPUTED, TransactionStatus.SUCCEEDED),
        (TransactionStatus.DISPUTED, TransactionStatus.REFUNDED),
    ],
)
def test_legal_transitions(current, target):
    tx = _transaction(status=current)
    tx.transition_to(target, {"note": "x"})
    assert tx.status == target
    assert tx.metadata["note"] == "x"


@pytest.mark.parametrize(
    "current, target",
    [
        (TransactionStatus.SUCCEEDED, TransactionStatus.PENDING),
        (TransactionStatus.FAILED, TransactionStatus.SUCCEEDED),
        (TransactionStatus.CANCELED, TransactionStatus.SUCCEEDED),
        (TransactionStatus.REFUNDED, TransactionStatus.SUCCEEDED),
        (TransactionStatus.PENDING, TransactionStatus.DISPUTED),
        (TransactionStatus.PARTIALLY_REFUNDED, TransactionStatus.DISPUTED),
    ],
)
def test_illegal_transitions_leave_status_unchanged(current, target):
    tx = _transaction(status=current)
    with pytest.raises(InvalidTransitionException):
        tx.transition_to(target)
    assert tx.status == current


def test_succeeded_at_is_stamped_once():
    tx = _transaction()
    tx.transition_to(TransactionStatus.SUCCEEDED)
    first = tx.succeeded_at
    assert first is not None
    tx.transition_to(TransactionStatus.DISPUTED)
    tx.transition_to(TransactionStatus.SUCCEEDED)
    assert tx.succeeded_at == first


def test_partial_then_full_refund():
    tx = _transaction(status=TransactionStatus.SUCCEEDED)
    assert tx.apply_refund(300) is False
    assert tx.status == TransactionStatus.PARTIALLY_REFUNDED
    assert tx.remaining_refundable == 700
    assert tx.apply_refund(700) is True
    assert tx.status == TransactionStatus.REFUNDED
    assert not tx.is_refundable()


@pytest.mark.parametrize("amount", [0, -1, 1001])
def test_refund_amount_validation(amount):
    tx = _transaction(status=TransactionStatus.SUCCEEDED)
    with pytest.raises(InvalidAmountException):
        tx.check_refund(amount)


def test_pending_transaction_is_not_refundable():
    with pytest.raises(InvalidAmountException):
        _transaction().check_refund(100)


def test_earning_hold_release_cycle():
    earning = _earning()
    assert earning.hold() is True
    assert earning.hold() is False
    earning.release()
    assert earning.status == EarningStatus.AVAILABLE


def test_earning_zero_is_irreversible():
    earning = _earning()
    assert earning.zero() is True
    assert earning.net_amount == 0
    assert earning.status == EarningStatus.PENDING
    assert earning.zero() is False
    with pytest.raises(InvalidTransitionException):
        earning.release()


def test_paid_earning_cannot_be_zeroed_or_paid_again():
    earning = _earning()
    earning.mark_paid(datetime(2026, 1, 31))
    assert earning.payout_date.tzinfo == timezone.utc
    with pytest.raises(InvalidTransitionException):
        earning.zero()
    with pytest.raises(InvalidTransitionException):
        earning.mark_paid(datetime.now(timezone.utc))


def test_earning_net_cannot_exceed_gross_minus_fee():
    with pytest.raises(DomainValidationException):
        _earning(net_amount=900)


def test_dispute_status_updates_only_while_open():
    dispute = Dispute(id="d-1", transaction_id="tx-1", external_ref="dp_1", amount=1000)
    assert dispute.update_status(DisputeStatus.UNDER_REVIEW) is True
    assert dispute.update_status(DisputeStatus.UNDER_REVIEW) is False
    dispute.resolve(DisputeStatus.WON, "evidence accepted", "admin-1")
    assert not dispute.is_active
    assert dispute.resolved_at is not None
    with pytest.raises(InvalidTransitionException):
        dispute.update_status(DisputeStatus.NEEDS_RESPONSE)
    with pytest.raises(InvalidTransitionException):
        dispute.resolve(DisputeStatus.LOST, None, None)


def test_dispute_resolution_requires_terminal_outcome():
    dispute = Dispute(id="d-1", transaction_id="tx-1", external_ref="dp_1", amount=1000)
    with pytest.raises(DomainValidationException):
        dispute.resolve(DisputeStatus.UNDER_REVIEW, None, None)


def test_earnings_period_bounds():
    now = datetime(2026, 12, 5, tzinfo=timezone.utc)
    month = EarningsPeriod.parse("month", now=now)
    assert month.kind == PeriodKind.MONTH
    assert month.bounds() == (
        datetime(2026, 12, 1, tzinfo=timezone.utc),
        datetime(2027, 1, 1, tzinfo=timezone.utc),
    )
    year = EarningsPeriod.parse("year", 2025)
    assert year.bounds() == (
        datetime(2025, 1, 1, tzinfo=timezone.utc),
        datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    assert EarningsPeriod.parse("all").bounds() == (None, None)


def test_earnings_period_rejects_unknown_kind():
    with pytest.raises(DomainValidationException) as exc:
        EarningsPeriod.parse("week")
    assert exc.value.field == "period"

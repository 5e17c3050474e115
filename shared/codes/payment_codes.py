"""
Payment and settlement ledger codes plus provider status/event mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    RATE_LIMITED = 60004


class LedgerCode(IntEnum):
    """Settlement ledger errors (201xx)."""

    TRANSACTION_NOT_FOUND = 20100
    TRANSACTION_ALREADY_EXISTS = 20101
    INVALID_TRANSITION = 20102
    INVALID_AMOUNT = 20103
    EARNING_NOT_FOUND = 20110
    EARNING_ALREADY_EXISTS = 20111
    EARNING_STATE_ERROR = 20112
    NO_ACTIVE_DISPUTE = 20120
    RECEIPT_NOT_FOUND = 20130
    DUPLICATE_PURCHASE = 20140
    ITEM_UNAVAILABLE = 20141
    CONCURRENT_MODIFICATION = 20150
    MALFORMED_EVENT = 20160
    ORPHAN_EVENT = 20161


# Provider→internal payment/refund status mapping
PROVIDER_STATUS_TO_INTERNAL = {
    "stripe": {
        "requires_payment_method": "failed",
        "requires_confirmation": "pending",
        "requires_action": "pending",
        "processing": "pending",
        "requires_capture": "pending",
        "succeeded": "succeeded",
        "canceled": "canceled",
        # refund objects
        "pending": "pending",
        "failed": "failed",
    },
}

# Provider webhook event type→internal settlement event type
PROVIDER_EVENT_TO_INTERNAL = {
    "stripe": {
        "payment_intent.succeeded": "payment.succeeded",
        "payment_intent.payment_failed": "payment.failed",
        "payment_intent.canceled": "payment.canceled",
        "charge.dispute.created": "dispute.created",
        "charge.dispute.updated": "dispute.updated",
        "charge.dispute.closed": "dispute.closed",
    },
}

# Provider dispute status→internal dispute status
PROVIDER_DISPUTE_STATUS_TO_INTERNAL = {
    "stripe": {
        "warning_needs_response": "needs_response",
        "needs_response": "needs_response",
        "warning_under_review": "under_review",
        "under_review": "under_review",
        "warning_closed": "won",
        "won": "won",
        "lost": "lost",
        "charge_refunded": "charge_refunded",
    },
}

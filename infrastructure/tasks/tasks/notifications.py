"""Buyer and creator notifications triggered by settlement events.

Delivery is best effort and independently retried; failures here never touch
ledger state.
"""
from __future__ import annotations

from celery import shared_task

from ..utils.base_task import BaseTask
from core.logging_config import get_logger

logger = get_logger(__name__)

_RETRY = dict(
    bind=True,
    base=BaseTask,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    retry_kwargs={"max_retries": 5},
)


@shared_task(name="notifications.send_purchase_receipt", **_RETRY)
def send_purchase_receipt(self, transaction_id: str, buyer_id: str, receipt_number: str | None = None,
                          amount: int = 0, currency: str = "", **_: object) -> None:
    """Email the buyer their receipt. Replace the body with real ESP integration."""
    logger.info(
        "purchase_receipt_sent",
        transaction_id=transaction_id,
        buyer_id=buyer_id,
        receipt_number=receipt_number,
        amount=amount,
        currency=currency,
    )


@shared_task(name="notifications.send_refund_confirmation", **_RETRY)
def send_refund_confirmation(self, transaction_id: str, refund_id: str, amount: int = 0,
                             fully_refunded: bool = False, **_: object) -> None:
    logger.info(
        "refund_confirmation_sent",
        transaction_id=transaction_id,
        refund_id=refund_id,
        amount=amount,
        fully_refunded=fully_refunded,
    )


@shared_task(name="notifications.notify_creator_sale", **_RETRY)
def notify_creator_sale(self, transaction_id: str, creator_id: str, earning_id: str,
                        net_amount: int = 0, **_: object) -> None:
    logger.info(
        "creator_sale_notified",
        transaction_id=transaction_id,
        creator_id=creator_id,
        earning_id=earning_id,
        net_amount=net_amount,
    )


@shared_task(name="notifications.notify_dispute_opened", **_RETRY)
def notify_dispute_opened(self, transaction_id: str, creator_id: str, dispute_id: str,
                          amount: int = 0, reason: str | None = None, **_: object) -> None:
    logger.warning(
        "dispute_alert_sent",
        transaction_id=transaction_id,
        creator_id=creator_id,
        dispute_id=dispute_id,
        amount=amount,
        reason=reason,
    )


@shared_task(name="notifications.notify_dispute_resolved", **_RETRY)
def notify_dispute_resolved(self, transaction_id: str, creator_id: str, dispute_id: str,
                            outcome: str = "", **_: object) -> None:
    logger.info(
        "dispute_resolution_sent",
        transaction_id=transaction_id,
        creator_id=creator_id,
        dispute_id=dispute_id,
        outcome=outcome,
    )

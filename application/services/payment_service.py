"""
Application service orchestrating the settlement use-cases.

This class depends only on application ports (gateway, catalog, locks,
notifier) and a unit-of-work factory. Concrete adapters are provided by
infrastructure and injected from the composition root (API/tasks), keeping
dependencies one-way.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Tuple

from pydantic import ValidationError

from application.dto import EarningsSummaryDTO, PurchaseIntentDTO, TopItemDTO
from application.dtos.payments import CreatePaymentIntent, ProcessorEvent, SettlementOutcome, SettlementResult
from application.ports.catalog import CatalogPort
from application.ports.locks import KeyedLock
from application.ports.notifier import Notifier, NullNotifier
from application.ports.payment_gateway import PaymentGateway
from application.services.dispute_service import DisputeHandler
from application.services.ledger_context import LedgerContext, UnitOfWorkFactory
from application.services.refund_service import RefundProcessor
from application.services.settlement_service import SettlementEventProcessor
from application.utils.idempotency import idempotency_key
from application.utils.retry import retry_on_conflict
from core.logging_config import get_logger
from core.settings import LedgerSettings
from domain.common.exceptions import DomainValidationException
from domain.payment.commission import split
from domain.payment.entity import (
    Dispute,
    DisputeStatus,
    Earning,
    EarningsPeriod,
    Receipt,
    Refund,
    RefundReason,
    Transaction,
    TransactionStatus,
)
from domain.payment.exceptions import (
    DuplicatePurchaseException,
    ItemUnavailableException,
    ReceiptNotFoundException,
    TransactionAlreadyExistsException,
)


logger = get_logger(__name__)

# 买家已拥有商品的交易状态
OWNED_STATUSES = (
    TransactionStatus.SUCCEEDED,
    TransactionStatus.PARTIALLY_REFUNDED,
    TransactionStatus.DISPUTED,
)
# 计入销量/营收的交易状态
SALE_STATUSES = (TransactionStatus.SUCCEEDED, TransactionStatus.PARTIALLY_REFUNDED)


class PaymentService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        gateway: PaymentGateway,
        catalog: CatalogPort,
        locks: KeyedLock,
        *,
        ledger_settings: Optional[LedgerSettings] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.uow_factory = uow_factory
        self.gateway = gateway
        self.catalog = catalog
        self.locks = locks
        self.settings = ledger_settings or LedgerSettings()
        self.notifier = notifier or NullNotifier()
        self.disputes = DisputeHandler(
            uow_factory,
            locks,
            conflict_attempts=self.settings.conflict_max_attempts,
            notifier=self.notifier,
        )
        self.settlement = SettlementEventProcessor(
            uow_factory,
            locks,
            ledger_settings=self.settings,
            disputes=self.disputes,
            notifier=self.notifier,
        )
        self.refunds = RefundProcessor(
            uow_factory,
            gateway,
            locks,
            conflict_attempts=self.settings.conflict_max_attempts,
            notifier=self.notifier,
        )

    # ------------------------------------------------------------------ purchase

    async def initiate_purchase(self, buyer_id: str, item_id: str) -> PurchaseIntentDTO:
        if not await self.catalog.user_exists(buyer_id):
            raise DomainValidationException(f"Unknown buyer: {buyer_id}", field="buyer_id")
        item = await self.catalog.get_item(item_id)
        if item is None:
            raise ItemUnavailableException(item_id)
        if not item.is_active:
            raise ItemUnavailableException(item_id, reason="inactive")

        async with self.uow_factory(readonly=True) as uow:
            if await uow.transaction_repository.exists_for_buyer_item(buyer_id, item_id, OWNED_STATUSES):
                raise DuplicatePurchaseException(buyer_id, item_id)
            attempts = await uow.transaction_repository.count_attempts(buyer_id, item_id)

        commission = split(item.price, self.settings.commission_rate)
        try:
            request = CreatePaymentIntent(
                amount=commission.gross_amount,
                currency=item.currency or self.settings.default_currency,
                description=item.title,
                idempotency_key=idempotency_key("purchase", buyer_id, item_id, attempts),
                metadata={
                    "buyer_id": buyer_id,
                    "item_id": item_id,
                    "creator_id": item.creator_id,
                    "platform_fee": str(commission.platform_fee),
                    "creator_revenue": str(commission.creator_revenue),
                },
            )
        except ValidationError as exc:
            raise DomainValidationException(
                f"Item {item_id} cannot be charged: {exc.errors()[0]['msg']}",
                field="currency",
            ) from exc

        intent = await self.gateway.create_payment_intent(request)
        logger.info(
            "payment_intent_created",
            buyer_id=buyer_id,
            item_id=item_id,
            intent_id=intent.intent_id,
            provider=intent.provider,
            amount=commission.gross_amount,
        )

        try:
            async with self.uow_factory() as uow:
                transaction = await LedgerContext.bind(uow).transactions.create(
                    buyer_id=buyer_id,
                    item_id=item_id,
                    creator_id=item.creator_id,
                    amount=commission.gross_amount,
                    currency=request.currency,
                    external_ref=intent.intent_id,
                    platform_fee=commission.platform_fee,
                    creator_revenue=commission.creator_revenue,
                    metadata={
                        "item_title": item.title,
                        "creator_name": item.creator_name or item.creator_id,
                        "provider": intent.provider,
                    },
                )
        except TransactionAlreadyExistsException:
            # 同一幂等键的重复请求：处理方返回了同一个 intent
            async with self.uow_factory(readonly=True) as uow:
                transaction = await uow.transaction_repository.get_by_external_ref(intent.intent_id)
            logger.info("purchase_replayed", transaction_id=transaction.id, intent_id=intent.intent_id)

        return PurchaseIntentDTO(
            transaction_id=transaction.id,
            client_secret=intent.client_secret,
            amount=transaction.amount,
            currency=transaction.currency,
            platform_fee=transaction.platform_fee,
            creator_revenue=transaction.creator_revenue,
        )

    # ------------------------------------------------------------------ processor events

    async def handle_processor_event(self, payload: bytes, signature: Optional[str]) -> SettlementResult:
        """Verify, normalise and settle one processor notification."""
        webhook = self.gateway.verify_and_parse_event(payload, signature)
        event = ProcessorEvent.from_webhook(webhook)
        if event is None:
            logger.info(
                "settlement_event_unsupported",
                provider=webhook.provider,
                event_type=webhook.type,
                event_id=webhook.id,
            )
            return SettlementResult(event_id=webhook.id, event_type=webhook.type, outcome=SettlementOutcome.IGNORED)
        return await self.settlement.process_with_retry(event)

    async def replay_dead_letters(self, limit: Optional[int] = None) -> dict:
        return await self.settlement.replay_dead_letters(limit)

    # ------------------------------------------------------------------ refunds / disputes

    async def request_refund(
        self,
        transaction_id: str,
        amount: Optional[int] = None,
        reason: RefundReason | str = RefundReason.REQUESTED_BY_CUSTOMER,
        actor_id: Optional[str] = None,
    ) -> Refund:
        return await self.refunds.refund(transaction_id, amount, reason, actor_id)

    async def record_dispute(
        self,
        transaction_id: str,
        dispute_id: str,
        reason: Optional[str] = None,
        amount: Optional[int] = None,
        status: str | DisputeStatus = DisputeStatus.NEEDS_RESPONSE,
        actor_id: Optional[str] = None,
    ) -> Dispute:
        return await self.disputes.record(transaction_id, dispute_id, reason, amount, status, actor_id)

    async def resolve_dispute(
        self,
        transaction_id: str,
        outcome: str | DisputeStatus,
        resolution: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Transaction:
        return await self.disputes.resolve(transaction_id, outcome, resolution, actor_id)

    # ------------------------------------------------------------------ queries

    async def get_creator_earnings_summary(
        self,
        creator_id: str,
        period: str = "all",
        year: Optional[int] = None,
        month: Optional[int] = None,
    ) -> EarningsSummaryDTO:
        earnings_period = EarningsPeriod.parse(period, year, month)
        start, end = earnings_period.bounds()
        async with self.uow_factory(readonly=True) as uow:
            totals = await LedgerContext.bind(uow).earnings.totals_for_creator(creator_id, earnings_period)
            sales, revenue = await uow.transaction_repository.sales_summary(
                creator_id, SALE_STATUSES, start=start, end=end,
            )
            top = await uow.transaction_repository.top_items(
                creator_id, SALE_STATUSES, start=start, end=end, limit=self.settings.top_items_limit,
            )
        return EarningsSummaryDTO(
            creator_id=creator_id,
            period=earnings_period.kind.value,
            year=earnings_period.year,
            month=earnings_period.month,
            available=totals.available,
            pending=totals.pending,
            paid=totals.paid,
            total=totals.total,
            total_sales=sales,
            total_revenue=revenue,
            top_items=[TopItemDTO.model_validate(i) for i in top],
        )

    async def get_receipt(self, transaction_id: str) -> Receipt:
        async with self.uow_factory(readonly=True) as uow:
            receipt = await uow.receipt_repository.get_by_transaction_id(transaction_id)
        if receipt is None:
            raise ReceiptNotFoundException(transaction_id)
        return receipt

    async def get_transaction(self, transaction_id: str) -> Transaction:
        async with self.uow_factory(readonly=True) as uow:
            return await LedgerContext.bind(uow).transactions.get(transaction_id)

    async def list_history(
        self,
        *,
        buyer_id: Optional[str] = None,
        creator_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> Tuple[List[Transaction], int]:
        """Purchase history for exactly one of ``buyer_id`` / ``creator_id``."""
        if bool(buyer_id) == bool(creator_id):
            raise DomainValidationException("Exactly one of buyer_id or creator_id is required", field="buyer_id")
        async with self.uow_factory(readonly=True) as uow:
            repo = uow.transaction_repository
            if buyer_id:
                items = await repo.list_by_buyer(buyer_id, skip=skip, limit=limit)
                total = await repo.count_by_buyer(buyer_id)
            else:
                items = await repo.list_by_creator(creator_id, skip=skip, limit=limit)
                total = await repo.count_by_creator(creator_id)
        return items, total

    # ------------------------------------------------------------------ payouts

    async def mark_earning_paid(self, earning_id: str, payout_date: Optional[datetime] = None) -> Earning:
        """Bookkeeping only: records that an available earning was paid out."""
        payout_date = payout_date or datetime.now(timezone.utc)

        async def _apply() -> Earning:
            async with self.uow_factory() as uow:
                earning = await LedgerContext.bind(uow).earnings.mark_paid(earning_id, payout_date)
                await uow.commit()
            return earning

        earning = await retry_on_conflict(_apply, attempts=self.settings.conflict_max_attempts)
        logger.info("earning_marked_paid", earning_id=earning_id, net_amount=earning.net_amount)
        return earning

    async def aclose(self) -> None:
        # Best-effort close underlying resources
        for resource in (self.gateway, self.catalog, self.locks):
            close = getattr(resource, "aclose", None)
            if callable(close):
                await close()

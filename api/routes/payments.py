"""
Settlement API routes.

Keep this thin: validation by DTOs, orchestration in PaymentService, no SDK
details here. Amounts are minor currency units throughout.
"""
from __future__ import annotations

import ipaddress
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from api.dependencies import get_payment_service
from application.dto import (
    DisputeDTO,
    DisputeRecordDTO,
    DisputeResolutionDTO,
    EarningDTO,
    MarkPaidDTO,
    PaginationParams,
    PurchaseRequestDTO,
    ReceiptDTO,
    RefundDTO,
    RefundRequestDTO,
    SettlementResultDTO,
    TransactionDTO,
)
from application.services.payment_service import PaymentService
from core.logging_config import get_logger
from core.response import paginated_response, success_response
from core.settings import payment_settings


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


def _ip_allowed(remote_ip: Optional[str]) -> bool:
    allowlist = payment_settings.webhook.ip_allowlist or []
    if not allowlist:
        return True
    if not remote_ip:
        return False
    try:
        ip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry and ip in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
        if remote_ip == entry:
            return True
    return False


@router.post("/purchases", summary="Initiate purchase")
async def initiate_purchase(
    payload: PurchaseRequestDTO,
    service: PaymentService = Depends(get_payment_service),
):
    intent = await service.initiate_purchase(payload.buyer_id, payload.item_id)
    return success_response(data=intent, message="Purchase initiated")


@router.post("/webhooks/stripe", summary="Stripe webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    service: PaymentService = Depends(get_payment_service),
):
    remote_ip = getattr(request.state, "client_ip", None) or (request.client.host if request.client else None)
    if not _ip_allowed(remote_ip):
        logger.warning("webhook_ip_rejected", remote_ip=remote_ip)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Webhook source not allowed")

    raw_body = await request.body()
    result = await service.handle_processor_event(raw_body, stripe_signature)
    # 已处理/重复/忽略/进入死信均返回 200，处理方不再重投
    return success_response(
        data=SettlementResultDTO(
            event_id=result.event_id,
            outcome=result.outcome.value,
            duplicate=result.duplicate,
        ),
        message="Event received",
    )


@router.get("/creators/{creator_id}/earnings", summary="Creator earnings summary")
async def creator_earnings(
    creator_id: str,
    period: Literal["all", "month", "year"] = Query(default="all"),
    year: Optional[int] = Query(default=None, ge=2000, le=9999),
    month: Optional[int] = Query(default=None, ge=1, le=12),
    service: PaymentService = Depends(get_payment_service),
):
    summary = await service.get_creator_earnings_summary(creator_id, period, year, month)
    return success_response(data=summary)


@router.post("/refunds", summary="Request refund")
async def request_refund(
    payload: RefundRequestDTO,
    service: PaymentService = Depends(get_payment_service),
):
    refund = await service.request_refund(payload.transaction_id, payload.amount, payload.reason, payload.actor_id)
    return success_response(data=RefundDTO.model_validate(refund), message="Refund processed")


@router.post("/disputes", summary="Record dispute")
async def record_dispute(
    payload: DisputeRecordDTO,
    service: PaymentService = Depends(get_payment_service),
):
    dispute = await service.record_dispute(
        payload.transaction_id,
        payload.dispute_id,
        payload.reason,
        payload.amount,
        payload.status,
        payload.actor_id,
    )
    return success_response(data=DisputeDTO.model_validate(dispute), message="Dispute recorded")


@router.post("/disputes/{transaction_id}/resolve", summary="Resolve dispute")
async def resolve_dispute(
    transaction_id: str,
    payload: DisputeResolutionDTO,
    service: PaymentService = Depends(get_payment_service),
):
    transaction = await service.resolve_dispute(transaction_id, payload.outcome, payload.resolution, payload.actor_id)
    return success_response(data=TransactionDTO.model_validate(transaction), message="Dispute resolved")


@router.get("/receipts/{transaction_id}", summary="Get receipt")
async def get_receipt(
    transaction_id: str,
    service: PaymentService = Depends(get_payment_service),
):
    receipt = await service.get_receipt(transaction_id)
    return success_response(data=ReceiptDTO.model_validate(receipt))


@router.get("/transactions/{transaction_id}", summary="Get transaction")
async def get_transaction(
    transaction_id: str,
    service: PaymentService = Depends(get_payment_service),
):
    transaction = await service.get_transaction(transaction_id)
    return success_response(data=TransactionDTO.model_validate(transaction))


@router.get("/history", summary="Purchase or sales history")
async def history(
    buyer_id: Optional[str] = Query(default=None),
    creator_id: Optional[str] = Query(default=None),
    pagination: PaginationParams = Depends(),
    service: PaymentService = Depends(get_payment_service),
):
    items, total = await service.list_history(
        buyer_id=buyer_id,
        creator_id=creator_id,
        skip=pagination.skip,
        limit=pagination.limit,
    )
    return paginated_response(
        items=[TransactionDTO.model_validate(t) for t in items],
        total=total,
        page=pagination.page,
        size=pagination.size,
    )


@router.post("/earnings/{earning_id}/paid", summary="Mark earning paid")
async def mark_earning_paid(
    earning_id: str,
    payload: Optional[MarkPaidDTO] = None,
    service: PaymentService = Depends(get_payment_service),
):
    earning = await service.mark_earning_paid(earning_id, payload.payout_date if payload else None)
    return success_response(data=EarningDTO.model_validate(earning), message="Earning marked paid")

"""
数据传输对象（DTO）- 应用层与表现层之间的数据传输
"""
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_serializer

from core.config import settings
from domain.payment.entity import (
    DisputeStatus,
    EarningStatus,
    RefundReason,
    RefundStatus,
    TransactionStatus,
)


class DTOBase(BaseModel):
    """Base DTO: unify datetime serialization to UTC-Z for all subclasses."""

    @model_serializer(mode="wrap")
    def _serialize_model(self, handler):  # type: ignore[override]
        data = handler(self)

        def convert(value):
            if isinstance(value, datetime):
                ts = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
                s = ts.astimezone(timezone.utc).isoformat()
                return s.replace("+00:00", "Z")
            if isinstance(value, list):
                return [convert(v) for v in value]
            if isinstance(value, tuple):
                return tuple(convert(v) for v in value)
            if isinstance(value, dict):
                return {k: convert(v) for k, v in value.items()}
            return value

        return convert(data)


class PaginationParams(DTOBase):
    """分页参数（页码/每页大小），自动派生 skip/limit"""
    page: int = Field(1, ge=1, description="页码，从1开始")
    size: int = Field(
        default=settings.DEFAULT_PAGE_SIZE,
        ge=1,
        le=settings.MAX_PAGE_SIZE,
        description="每页大小",
    )

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.size

    @property
    def limit(self) -> int:
        return self.size


# ---------- 请求 ----------

class PurchaseRequestDTO(DTOBase):
    """发起购买"""
    buyer_id: str = Field(..., min_length=1, max_length=64)
    item_id: str = Field(..., min_length=1, max_length=64)


class RefundRequestDTO(DTOBase):
    """申请退款；amount 为空时退还剩余全部金额"""
    transaction_id: str = Field(..., min_length=1)
    amount: Optional[int] = Field(default=None, gt=0, description="最小货币单位")
    reason: RefundReason = RefundReason.REQUESTED_BY_CUSTOMER
    actor_id: Optional[str] = None


class DisputeRecordDTO(DTOBase):
    """登记处理方 webhook 之外上报的争议（含 warning_* 询单状态）"""
    transaction_id: str = Field(..., min_length=1)
    dispute_id: str = Field(..., min_length=1, max_length=200)
    reason: Optional[str] = Field(default=None, max_length=200)
    amount: Optional[int] = Field(default=None, ge=0, description="最小货币单位，默认交易总额")
    status: Literal[
        "warning_needs_response",
        "warning_under_review",
        "warning_closed",
        "needs_response",
        "under_review",
        "charge_refunded",
        "won",
        "lost",
    ] = "needs_response"
    actor_id: Optional[str] = None


class DisputeResolutionDTO(DTOBase):
    """人工结案争议"""
    outcome: Literal["won", "lost", "charge_refunded"]
    resolution: Optional[str] = Field(default=None, max_length=1000)
    actor_id: Optional[str] = None


class MarkPaidDTO(DTOBase):
    payout_date: Optional[datetime] = None


# ---------- 响应 ----------

class PurchaseIntentDTO(DTOBase):
    transaction_id: str
    client_secret: Optional[str]
    amount: int
    currency: str
    platform_fee: int
    creator_revenue: int


class TransactionDTO(DTOBase):
    id: str
    buyer_id: str
    item_id: str
    creator_id: str
    amount: int
    currency: str
    platform_fee: int
    creator_revenue: int
    refunded_amount: int
    external_ref: str
    payment_method: str
    status: TransactionStatus
    receipt_number: Optional[str]
    failure_reason: Optional[str]
    metadata: dict
    created_at: Optional[datetime]
    updated_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class EarningDTO(DTOBase):
    id: str
    creator_id: str
    transaction_id: str
    item_id: str
    gross_amount: int
    platform_fee: int
    net_amount: int
    status: EarningStatus
    payout_date: Optional[datetime]
    created_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class RefundDTO(DTOBase):
    id: str
    transaction_id: str
    amount: int
    reason: RefundReason
    status: RefundStatus
    external_ref: Optional[str]
    requested_by: Optional[str]
    failure_reason: Optional[str]
    created_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class DisputeDTO(DTOBase):
    id: str
    transaction_id: str
    external_ref: str
    amount: int
    status: DisputeStatus
    reason: Optional[str]
    resolution: Optional[str]
    resolved_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class ReceiptDTO(DTOBase):
    receipt_number: str
    transaction_id: str
    buyer_id: str
    item_id: str
    item_title: str
    creator_id: str
    creator_name: str
    amount: int
    currency: str
    platform_fee: int
    creator_revenue: int
    payment_method: str
    purchase_date: datetime

    model_config = ConfigDict(from_attributes=True)


class TopItemDTO(DTOBase):
    item_id: str
    title: Optional[str]
    sales: int
    revenue: int
    earnings: int

    model_config = ConfigDict(from_attributes=True)


class EarningsSummaryDTO(DTOBase):
    """创作者收益汇总"""
    creator_id: str
    period: str
    year: Optional[int] = None
    month: Optional[int] = None
    available: int
    pending: int
    paid: int
    total: int
    total_sales: int
    total_revenue: int
    top_items: list[TopItemDTO] = Field(default_factory=list)


class SettlementResultDTO(DTOBase):
    received: bool = True
    event_id: str
    outcome: str
    duplicate: bool = False

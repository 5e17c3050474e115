"""
结算领域实体 - 交易、收益、退款、争议、收据
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from domain.common.exceptions import DomainValidationException
from domain.payment.exceptions import InvalidAmountException, InvalidTransitionException


class TransactionStatus(str, Enum):
    """交易状态枚举"""
    PENDING = "pending"                        # 待支付
    SUCCEEDED = "succeeded"                    # 支付成功
    FAILED = "failed"                          # 支付失败
    CANCELED = "canceled"                      # 已取消
    REFUNDED = "refunded"                      # 已全额退款
    PARTIALLY_REFUNDED = "partially_refunded"  # 部分退款
    DISPUTED = "disputed"                      # 争议中


# 交易状态机：未列出的迁移一律非法
TRANSACTION_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset(
        {TransactionStatus.SUCCEEDED, TransactionStatus.FAILED, TransactionStatus.CANCELED}
    ),
    TransactionStatus.SUCCEEDED: frozenset(
        {TransactionStatus.REFUNDED, TransactionStatus.PARTIALLY_REFUNDED, TransactionStatus.DISPUTED}
    ),
    # 多次部分退款
    TransactionStatus.PARTIALLY_REFUNDED: frozenset(
        {TransactionStatus.PARTIALLY_REFUNDED, TransactionStatus.REFUNDED}
    ),
    TransactionStatus.DISPUTED: frozenset({TransactionStatus.SUCCEEDED, TransactionStatus.REFUNDED}),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.CANCELED: frozenset(),
    TransactionStatus.REFUNDED: frozenset(),
}


class EarningStatus(str, Enum):
    """收益状态枚举"""
    AVAILABLE = "available"  # 可结算
    PENDING = "pending"      # 冻结（争议中或已清零）
    PAID = "paid"            # 已打款


class RefundStatus(str, Enum):
    """退款状态枚举"""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RefundReason(str, Enum):
    DUPLICATE = "duplicate"
    FRAUDULENT = "fraudulent"
    REQUESTED_BY_CUSTOMER = "requested_by_customer"


class DisputeStatus(str, Enum):
    """争议状态枚举"""
    NEEDS_RESPONSE = "needs_response"
    UNDER_REVIEW = "under_review"
    WON = "won"
    LOST = "lost"
    CHARGE_REFUNDED = "charge_refunded"


OPEN_DISPUTE_STATUSES = frozenset({DisputeStatus.NEEDS_RESPONSE, DisputeStatus.UNDER_REVIEW})
DISPUTE_OUTCOMES = frozenset({DisputeStatus.WON, DisputeStatus.LOST, DisputeStatus.CHARGE_REFUNDED})


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _require_minor_units(value: int, name: str, *, positive: bool = False) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise DomainValidationException(f"{name} 必须是整数（最小货币单位）: {value!r}", field=name)
    if value < 0 or (positive and value == 0):
        raise DomainValidationException(
            f"{name} 必须{'大于' if positive else '不小于'}0: {value}",
            field=name,
        )


@dataclass
class Transaction:
    """
    交易聚合根 - 一次购买尝试及其生命周期

    业务规则：
    1. amount == platform_fee + creator_revenue
    2. 金额必须大于0，且为最小货币单位整数
    3. 状态迁移必须遵循 TRANSACTION_TRANSITIONS
    4. 离开 pending 后只允许修改状态、元数据、退款/争议标注
    """

    id: str
    buyer_id: str
    item_id: str
    creator_id: str
    amount: int
    currency: str  # ISO-4217
    platform_fee: int
    creator_revenue: int
    external_ref: str  # 支付处理方的 intent id
    status: TransactionStatus = TransactionStatus.PENDING
    payment_method: str = "card"
    receipt_number: Optional[str] = None
    refunded_amount: int = 0
    failure_reason: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    version: int = 1

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    succeeded_at: Optional[datetime] = None

    def __post_init__(self):
        """初始化后验证"""
        for name in ("buyer_id", "item_id", "creator_id", "external_ref"):
            if not getattr(self, name):
                raise DomainValidationException(f"{name} 不能为空", field=name)
        _require_minor_units(self.amount, "amount", positive=True)
        _require_minor_units(self.platform_fee, "platform_fee")
        _require_minor_units(self.creator_revenue, "creator_revenue")
        _require_minor_units(self.refunded_amount, "refunded_amount")
        if self.platform_fee + self.creator_revenue != self.amount:
            raise DomainValidationException(
                f"平台费用 {self.platform_fee} + 创作者收入 {self.creator_revenue} != 金额 {self.amount}",
                field="amount",
            )
        if not self.currency or len(self.currency) != 3 or not self.currency.isalpha():
            raise DomainValidationException(f"无效的货币代码: {self.currency}", field="currency")
        self.currency = self.currency.upper()
        self.status = TransactionStatus(self.status)
        if self.metadata is None:
            self.metadata = {}
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.succeeded_at = _ensure_utc(self.succeeded_at)

    def can_transition(self, target: TransactionStatus) -> bool:
        return TransactionStatus(target) in TRANSACTION_TRANSITIONS[self.status]

    def transition_to(self, target: TransactionStatus, extra: Optional[dict] = None) -> None:
        """
        状态迁移

        extra 合并进 metadata（退款/争议标注等）。
        """
        target = TransactionStatus(target)
        if not self.can_transition(target):
            raise InvalidTransitionException(self.status.value, target.value)
        self.status = target
        now = _now()
        if target == TransactionStatus.SUCCEEDED and self.succeeded_at is None:
            self.succeeded_at = now
        if extra:
            self.metadata = {**self.metadata, **extra}
        self.updated_at = now

    @property
    def remaining_refundable(self) -> int:
        return self.amount - self.refunded_amount

    def is_refundable(self) -> bool:
        return (
            self.status in (TransactionStatus.SUCCEEDED, TransactionStatus.PARTIALLY_REFUNDED)
            and self.remaining_refundable > 0
        )

    def check_refund(self, amount: int) -> None:
        """校验退款金额（不修改状态）"""
        if not self.is_refundable():
            raise InvalidAmountException(
                f"Transaction in status {self.status.value} cannot be refunded",
                amount=amount,
                remaining=self.remaining_refundable,
            )
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountException(f"Refund amount must be a positive integer: {amount!r}", amount=None)
        if amount > self.remaining_refundable:
            raise InvalidAmountException(
                f"Refund amount {amount} exceeds remaining balance {self.remaining_refundable}",
                amount=amount,
                remaining=self.remaining_refundable,
            )

    def apply_refund(self, amount: int, extra: Optional[dict] = None) -> bool:
        """
        应用退款

        返回是否已全额退款。
        """
        self.check_refund(amount)
        self.refunded_amount += amount
        fully = self.refunded_amount >= self.amount
        target = TransactionStatus.REFUNDED if fully else TransactionStatus.PARTIALLY_REFUNDED
        self.transition_to(target, extra)
        return fully


@dataclass
class Earning:
    """
    创作者收益 - 与成功交易一一对应

    业务规则：
    1. net_amount = gross_amount - platform_fee（清零后为0）
    2. 清零（forfeit）不可逆，之后不得再释放
    3. 只有 available 状态可以标记为已打款
    """

    id: str
    creator_id: str
    transaction_id: str
    item_id: str
    gross_amount: int
    platform_fee: int
    net_amount: int
    status: EarningStatus = EarningStatus.AVAILABLE
    payout_date: Optional[datetime] = None
    forfeited_at: Optional[datetime] = None
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        _require_minor_units(self.gross_amount, "gross_amount")
        _require_minor_units(self.platform_fee, "platform_fee")
        _require_minor_units(self.net_amount, "net_amount")
        if self.net_amount > self.gross_amount - self.platform_fee:
            raise DomainValidationException(
                f"净收益 {self.net_amount} 超过 {self.gross_amount - self.platform_fee}",
                field="net_amount",
            )
        self.status = EarningStatus(self.status)
        self.payout_date = _ensure_utc(self.payout_date)
        self.forfeited_at = _ensure_utc(self.forfeited_at)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)

    @property
    def is_forfeited(self) -> bool:
        return self.forfeited_at is not None

    def _illegal(self, target: EarningStatus) -> InvalidTransitionException:
        return InvalidTransitionException(self.status.value, target.value, entity="earning")

    def hold(self) -> bool:
        """冻结；已冻结时为空操作，返回是否发生变化"""
        if self.status == EarningStatus.PENDING:
            return False
        if self.status != EarningStatus.AVAILABLE:
            raise self._illegal(EarningStatus.PENDING)
        self.status = EarningStatus.PENDING
        self.updated_at = _now()
        return True

    def release(self) -> None:
        """解冻；仅允许从未清零的 pending 状态"""
        if self.status != EarningStatus.PENDING or self.is_forfeited:
            raise self._illegal(EarningStatus.AVAILABLE)
        self.status = EarningStatus.AVAILABLE
        self.updated_at = _now()

    def zero(self) -> bool:
        """清零并冻结（不可逆）；已清零时为空操作"""
        if self.status == EarningStatus.PAID:
            raise self._illegal(EarningStatus.PENDING)
        if self.is_forfeited:
            return False
        now = _now()
        self.net_amount = 0
        self.status = EarningStatus.PENDING
        self.forfeited_at = now
        self.updated_at = now
        return True

    def mark_paid(self, payout_date: datetime) -> None:
        if self.status != EarningStatus.AVAILABLE:
            raise self._illegal(EarningStatus.PAID)
        self.status = EarningStatus.PAID
        self.payout_date = _ensure_utc(payout_date)
        self.updated_at = _now()


@dataclass
class Refund:
    """退款记录 - 通过 transaction_id 引用交易"""

    id: str
    transaction_id: str
    amount: int
    reason: RefundReason
    status: RefundStatus = RefundStatus.PENDING
    external_ref: Optional[str] = None  # 处理方退款ID
    requested_by: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        _require_minor_units(self.amount, "amount", positive=True)
        self.reason = RefundReason(self.reason)
        self.status = RefundStatus(self.status)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)


@dataclass
class Dispute:
    """争议（拒付）生命周期"""

    id: str
    transaction_id: str
    external_ref: str
    amount: int
    status: DisputeStatus = DisputeStatus.NEEDS_RESPONSE
    reason: Optional[str] = None
    resolution: Optional[str] = None
    resolved_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    def __post_init__(self):
        _require_minor_units(self.amount, "amount")
        self.status = DisputeStatus(self.status)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.resolved_at = _ensure_utc(self.resolved_at)

    @property
    def is_active(self) -> bool:
        return self.status in OPEN_DISPUTE_STATUSES

    def update_status(self, status: DisputeStatus) -> bool:
        """在 needs_response / under_review 之间切换"""
        status = DisputeStatus(status)
        if status not in OPEN_DISPUTE_STATUSES or not self.is_active:
            raise InvalidTransitionException(self.status.value, status.value, entity="dispute")
        if status == self.status:
            return False
        self.status = status
        self.updated_at = _now()
        return True

    def resolve(self, outcome: DisputeStatus, resolution: Optional[str], resolved_by: Optional[str]) -> None:
        outcome = DisputeStatus(outcome)
        if outcome not in DISPUTE_OUTCOMES:
            raise DomainValidationException(f"无效的争议结果: {outcome.value}", field="outcome")
        if not self.is_active:
            raise InvalidTransitionException(self.status.value, outcome.value, entity="dispute")
        now = _now()
        self.status = outcome
        self.resolution = resolution
        self.resolved_by = resolved_by
        self.resolved_at = now
        self.updated_at = now


@dataclass(frozen=True)
class Receipt:
    """收据 - 成功交易的不可变购买凭证"""

    id: str
    transaction_id: str
    receipt_number: str
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
    created_at: Optional[datetime] = None


@dataclass
class ProcessedEvent:
    """已处理事件（去重集合）"""

    event_id: str
    event_type: str
    external_ref: str
    outcome: str
    transaction_id: Optional[str] = None
    processed_at: Optional[datetime] = None

    def __post_init__(self):
        self.processed_at = _ensure_utc(self.processed_at) or _now()


@dataclass
class DeadLetterEvent:
    """重试耗尽的孤儿事件"""

    event_id: str
    event_type: str
    external_ref: str
    payload: dict
    reason: str
    attempts: int = 1
    created_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    def __post_init__(self):
        self.created_at = _ensure_utc(self.created_at)
        self.last_attempt_at = _ensure_utc(self.last_attempt_at)
        self.resolved_at = _ensure_utc(self.resolved_at)

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def record_attempt(self, reason: str) -> None:
        self.attempts += 1
        self.reason = reason
        self.last_attempt_at = _now()

    def mark_resolved(self) -> None:
        self.resolved_at = _now()


class PeriodKind(str, Enum):
    ALL = "all"
    MONTH = "month"
    YEAR = "year"


@dataclass(frozen=True)
class EarningsPeriod:
    """收益统计区间 [start, end)，UTC"""

    kind: PeriodKind = PeriodKind.ALL
    year: Optional[int] = None
    month: Optional[int] = None

    @classmethod
    def parse(
        cls,
        kind: str = "all",
        year: Optional[int] = None,
        month: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> "EarningsPeriod":
        """缺省的年/月取当前时间"""
        try:
            period_kind = PeriodKind(kind)
        except ValueError:
            raise DomainValidationException(f"无效的统计区间: {kind}", field="period") from None
        now = now or _now()
        if period_kind == PeriodKind.ALL:
            return cls(PeriodKind.ALL)
        year = year or now.year
        if period_kind == PeriodKind.YEAR:
            return cls(PeriodKind.YEAR, year=year)
        month = month or now.month
        if not 1 <= month <= 12:
            raise DomainValidationException(f"无效的月份: {month}", field="month")
        return cls(PeriodKind.MONTH, year=year, month=month)

    def bounds(self) -> tuple[Optional[datetime], Optional[datetime]]:
        if self.kind == PeriodKind.ALL:
            return None, None
        if self.kind == PeriodKind.YEAR:
            return (
                datetime(self.year, 1, 1, tzinfo=timezone.utc),
                datetime(self.year + 1, 1, 1, tzinfo=timezone.utc),
            )
        start = datetime(self.year, self.month, 1, tzinfo=timezone.utc)
        if self.month == 12:
            end = datetime(self.year + 1, 1, 1, tzinfo=timezone.utc)
        else:
            end = datetime(self.year, self.month + 1, 1, tzinfo=timezone.utc)
        return start, end


@dataclass(frozen=True)
class EarningsTotals:
    available: int = 0
    pending: int = 0
    paid: int = 0

    @property
    def total(self) -> int:
        return self.available + self.pending + self.paid


@dataclass(frozen=True)
class ItemSales:
    """单个商品的销售汇总"""

    item_id: str
    title: Optional[str]
    sales: int
    revenue: int
    earnings: int

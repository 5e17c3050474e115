"""
佣金计算 - 平台抽成与创作者收入拆分

纯函数，无副作用。费率由调用方显式传入（来自配置），不读取任何全局状态。
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Union

from domain.common.exceptions import DomainValidationException

Rate = Union[Decimal, float, str]


@dataclass(frozen=True)
class CommissionSplit:
    """拆分结果（最小货币单位）"""

    gross_amount: int
    platform_fee: int
    creator_revenue: int


def _to_rate(rate: Rate) -> Decimal:
    # float 先转 str，避免 0.15 变成 0.1499999...
    value = Decimal(str(rate)) if isinstance(rate, float) else Decimal(rate)
    if not value.is_finite() or value < 0 or value > 1:
        raise DomainValidationException(
            f"佣金费率必须在 [0, 1] 区间: {rate}",
            field="rate",
        )
    return value


def split(gross_amount: int, rate: Rate) -> CommissionSplit:
    """
    拆分总金额

    业务规则：
    1. platform_fee = round(gross_amount * rate)，四舍五入（half up）
    2. creator_revenue = gross_amount - platform_fee
    3. platform_fee + creator_revenue == gross_amount 恒成立
    """
    if isinstance(gross_amount, bool) or not isinstance(gross_amount, int):
        raise DomainValidationException(
            f"金额必须是整数（最小货币单位）: {gross_amount!r}",
            field="gross_amount",
        )
    if gross_amount < 0:
        raise DomainValidationException(
            f"金额不能为负数: {gross_amount}",
            field="gross_amount",
        )
    fee = int((Decimal(gross_amount) * _to_rate(rate)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return CommissionSplit(
        gross_amount=gross_amount,
        platform_fee=fee,
        creator_revenue=gross_amount - fee,
    )

"""
收据生成 - 成功交易的不可变购买凭证
"""
from __future__ import annotations

import secrets
import string
from datetime import datetime, timezone
from typing import Optional

from .entity import Receipt, Transaction, TransactionStatus, new_id
from .exceptions import InvalidTransitionException
from .repository import ReceiptRepository

_RECEIPT_ALPHABET = string.digits + string.ascii_uppercase


def generate_receipt_number(now: Optional[datetime] = None) -> str:
    """RCP-<毫秒时间戳>-<6位大写随机串>"""
    now = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(_RECEIPT_ALPHABET) for _ in range(6))
    return f"RCP-{int(now.timestamp() * 1000)}-{suffix}"


class ReceiptGenerator:
    """
    收据生成器

    业务规则：
    1. 只有 succeeded 交易可以开具收据
    2. 每笔交易最多一张收据，重复开具返回已有收据
    3. 收据创建后不可修改、不可删除
    """

    def __init__(self, receipt_repository: ReceiptRepository):
        self.receipt_repository = receipt_repository

    async def get_for_transaction(self, transaction_id: str) -> Optional[Receipt]:
        return await self.receipt_repository.get_by_transaction_id(transaction_id)

    async def issue(self, transaction: Transaction) -> Receipt:
        existing = await self.receipt_repository.get_by_transaction_id(transaction.id)
        if existing:
            return existing
        if transaction.status != TransactionStatus.SUCCEEDED:
            raise InvalidTransitionException(transaction.status.value, "receipt", entity="receipt")

        metadata = transaction.metadata or {}
        now = datetime.now(timezone.utc)
        receipt = Receipt(
            id=new_id(),
            transaction_id=transaction.id,
            receipt_number=transaction.receipt_number or generate_receipt_number(now),
            buyer_id=transaction.buyer_id,
            item_id=transaction.item_id,
            item_title=metadata.get("item_title") or transaction.item_id,
            creator_id=transaction.creator_id,
            creator_name=metadata.get("creator_name") or transaction.creator_id,
            amount=transaction.amount,
            currency=transaction.currency,
            platform_fee=transaction.platform_fee,
            creator_revenue=transaction.creator_revenue,
            payment_method=transaction.payment_method,
            purchase_date=transaction.succeeded_at or now,
            created_at=now,
        )
        return await self.receipt_repository.create(receipt)

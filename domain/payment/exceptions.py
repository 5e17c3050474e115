"""
结算账本领域异常
"""
from __future__ import annotations

from typing import Optional

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import LedgerCode, PaymentCode


class TransactionNotFoundException(BusinessException):
    """交易记录不存在"""
    def __init__(self, identifier: str):
        super().__init__(
            code=LedgerCode.TRANSACTION_NOT_FOUND,
            message=f"Transaction not found: {identifier}",
            error_type="TransactionNotFound",
            details={"identifier": identifier},
        )


class TransactionAlreadyExistsException(BusinessException):
    """外部引用已存在交易记录"""
    def __init__(self, external_ref: str):
        super().__init__(
            code=LedgerCode.TRANSACTION_ALREADY_EXISTS,
            message=f"Transaction already exists for reference {external_ref}",
            error_type="TransactionAlreadyExists",
            details={"external_ref": external_ref},
            field="external_ref",
        )


class InvalidTransitionException(BusinessException):
    """非法状态迁移"""
    def __init__(self, current: str, target: str, *, entity: str = "transaction"):
        super().__init__(
            code=LedgerCode.INVALID_TRANSITION,
            message=f"Illegal {entity} transition: {current} -> {target}",
            error_type="InvalidTransition",
            details={"entity": entity, "from": current, "to": target},
            field="status",
        )


class InvalidAmountException(BusinessException):
    """退款金额或交易状态不允许退款"""
    def __init__(self, message: str, *, amount: Optional[int] = None, remaining: Optional[int] = None):
        details = {}
        if amount is not None:
            details["amount"] = amount
        if remaining is not None:
            details["remaining"] = remaining
        super().__init__(
            code=LedgerCode.INVALID_AMOUNT,
            message=message,
            error_type="InvalidAmount",
            details=details or None,
            field="amount",
        )


class EarningNotFoundException(BusinessException):
    def __init__(self, identifier: str):
        super().__init__(
            code=LedgerCode.EARNING_NOT_FOUND,
            message=f"Earning not found: {identifier}",
            error_type="EarningNotFound",
            details={"identifier": identifier},
        )


class EarningAlreadyExistsException(BusinessException):
    """一笔交易只能对应一条收益"""
    def __init__(self, transaction_id: str):
        super().__init__(
            code=LedgerCode.EARNING_ALREADY_EXISTS,
            message=f"Earning already exists for transaction {transaction_id}",
            error_type="EarningAlreadyExists",
            details={"transaction_id": transaction_id},
        )


class NoActiveDisputeException(BusinessException):
    def __init__(self, transaction_id: str):
        super().__init__(
            code=LedgerCode.NO_ACTIVE_DISPUTE,
            message=f"No open dispute for transaction {transaction_id}",
            error_type="NoActiveDispute",
            details={"transaction_id": transaction_id},
        )


class ReceiptNotFoundException(BusinessException):
    def __init__(self, transaction_id: str):
        super().__init__(
            code=LedgerCode.RECEIPT_NOT_FOUND,
            message=f"Receipt not found for transaction {transaction_id}",
            error_type="ReceiptNotFound",
            details={"transaction_id": transaction_id},
        )


class DuplicatePurchaseException(BusinessException):
    """买家已拥有该商品"""
    def __init__(self, buyer_id: str, item_id: str):
        super().__init__(
            code=LedgerCode.DUPLICATE_PURCHASE,
            message="Item already purchased",
            error_type="DuplicatePurchase",
            details={"buyer_id": buyer_id, "item_id": item_id},
        )


class ItemUnavailableException(BusinessException):
    def __init__(self, item_id: str, reason: str = "not_found"):
        super().__init__(
            code=LedgerCode.ITEM_UNAVAILABLE,
            message=f"Item {item_id} is not available for purchase",
            error_type="ItemUnavailable",
            details={"item_id": item_id, "reason": reason},
            field="item_id",
        )


class ConcurrentModificationException(BusinessException):
    """乐观锁冲突：期望状态/版本已被并发修改"""
    def __init__(self, entity: str, entity_id: str, *, expected: Optional[str] = None):
        details = {"entity": entity, "id": entity_id}
        if expected is not None:
            details["expected"] = expected
        super().__init__(
            code=LedgerCode.CONCURRENT_MODIFICATION,
            message=f"{entity} {entity_id} was modified concurrently",
            error_type="ConcurrentModification",
            details=details,
        )


class MalformedEventException(BusinessException):
    """事件载荷不完整或无法解析（边界拒绝，不重试）"""
    def __init__(self, message: str, *, event_id: Optional[str] = None, field: Optional[str] = None):
        super().__init__(
            code=LedgerCode.MALFORMED_EVENT,
            message=message,
            error_type="MalformedEvent",
            details={"event_id": event_id} if event_id else None,
            field=field,
        )


class OrphanEventException(BusinessException):
    """事件引用的交易尚不存在或尚未结算（暂态，有限重试后进入死信）"""
    def __init__(self, event_id: str, external_ref: str, message: Optional[str] = None):
        super().__init__(
            code=LedgerCode.ORPHAN_EVENT,
            message=message or f"No transaction for reference {external_ref}",
            error_type="OrphanEvent",
            details={"event_id": event_id, "external_ref": external_ref},
        )


class ExternalProcessorError(BusinessException):
    """外部支付处理方调用失败的基类"""
    def __init__(
        self,
        message: str,
        *,
        provider: str,
        provider_code: str | None = None,
        details: Optional[dict] = None,
        code: int = PaymentCode.PROVIDER_ERROR,
        error_type: str = "ExternalProcessorError",
    ):
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        self.provider = provider
        self.provider_code = provider_code
        super().__init__(
            code=code,
            message=message,
            error_type=error_type,
            details=full_details,
        )


__all__ = [
    "TransactionNotFoundException",
    "TransactionAlreadyExistsException",
    "InvalidTransitionException",
    "InvalidAmountException",
    "EarningNotFoundException",
    "EarningAlreadyExistsException",
    "NoActiveDisputeException",
    "ReceiptNotFoundException",
    "DuplicatePurchaseException",
    "ItemUnavailableException",
    "ConcurrentModificationException",
    "MalformedEventException",
    "OrphanEventException",
    "ExternalProcessorError",
]

"""
结算数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, String, DateTime, Text, JSON,
    Index, ForeignKey
)

from .base import Base, utcnow


class TransactionModel(Base):
    """
    交易数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment.entity.Transaction 中
    """
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, comment="交易ID（UUID）")

    buyer_id = Column(String(64), nullable=False, comment="买家ID")
    item_id = Column(String(64), nullable=False, index=True, comment="商品ID")
    creator_id = Column(String(64), nullable=False, comment="创作者ID")

    # 金额（最小货币单位整数）
    amount = Column(Integer, nullable=False, comment="交易总额")
    currency = Column(String(3), nullable=False, default="USD", comment="货币代码 ISO-4217")
    platform_fee = Column(Integer, nullable=False, comment="平台佣金")
    creator_revenue = Column(Integer, nullable=False, comment="创作者收入")
    refunded_amount = Column(Integer, nullable=False, default=0, comment="已退款金额")

    # 支付处理方引用（事件幂等查找键）
    external_ref = Column(String(200), unique=True, nullable=False, comment="支付处理方 intent ID")
    payment_method = Column(String(50), nullable=False, default="card", comment="支付方式")
    receipt_number = Column(String(64), unique=True, nullable=True, comment="收据编号")

    status = Column(
        String(32),
        nullable=False,
        default="pending",
        index=True,
        comment="交易状态: pending/succeeded/failed/canceled/refunded/partially_refunded/disputed"
    )
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    # 元数据（使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突）
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    # 乐观锁版本
    version = Column(Integer, nullable=False, default=1, comment="版本号")

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, comment="更新时间")
    succeeded_at = Column(DateTime(timezone=True), nullable=True, comment="支付成功时间")

    __table_args__ = (
        Index("ix_transactions_creator_status", "creator_id", "status"),
        Index("ix_transactions_buyer_created", "buyer_id", "created_at"),
        Index("ix_transactions_buyer_item", "buyer_id", "item_id"),
    )

    def __repr__(self):
        return (
            f"<TransactionModel(id='{self.id}', external_ref='{self.external_ref}', "
            f"amount={self.amount}, status='{self.status}')>"
        )


class EarningModel(Base):
    """
    创作者收益数据库模型

    transaction_id 唯一约束保证一笔交易只对应一条收益
    """
    __tablename__ = "earnings"

    id = Column(String(36), primary_key=True, comment="收益ID（UUID）")
    creator_id = Column(String(64), nullable=False, comment="创作者ID")
    transaction_id = Column(
        String(36),
        ForeignKey("transactions.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        comment="关联交易ID"
    )
    item_id = Column(String(64), nullable=False, comment="商品ID")

    gross_amount = Column(Integer, nullable=False, comment="交易总额")
    platform_fee = Column(Integer, nullable=False, comment="平台佣金")
    net_amount = Column(Integer, nullable=False, comment="应付创作者净额")

    status = Column(String(32), nullable=False, default="available", comment="收益状态: available/pending/paid")
    payout_date = Column(DateTime(timezone=True), nullable=True, comment="打款时间")
    forfeited_at = Column(DateTime(timezone=True), nullable=True, comment="清零时间")

    version = Column(Integer, nullable=False, default=1, comment="版本号")

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, comment="更新时间")

    __table_args__ = (
        Index("ix_earnings_creator_status", "creator_id", "status"),
        Index("ix_earnings_creator_created", "creator_id", "created_at"),
    )

    def __repr__(self):
        return (
            f"<EarningModel(id='{self.id}', transaction_id='{self.transaction_id}', "
            f"net_amount={self.net_amount}, status='{self.status}')>"
        )


class RefundModel(Base):
    """退款数据库模型"""
    __tablename__ = "refunds"

    id = Column(String(36), primary_key=True, comment="退款ID（UUID）")
    transaction_id = Column(
        String(36),
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="关联交易ID"
    )
    external_ref = Column(String(200), nullable=True, index=True, comment="处理方退款ID")

    amount = Column(Integer, nullable=False, comment="退款金额")
    reason = Column(String(50), nullable=False, comment="退款原因: duplicate/fraudulent/requested_by_customer")
    status = Column(String(32), nullable=False, default="pending", comment="退款状态: pending/succeeded/failed")
    requested_by = Column(String(64), nullable=True, comment="操作人ID")
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, comment="更新时间")

    def __repr__(self):
        return (
            f"<RefundModel(id='{self.id}', transaction_id='{self.transaction_id}', "
            f"amount={self.amount}, status='{self.status}')>"
        )


class DisputeModel(Base):
    """争议（拒付）数据库模型"""
    __tablename__ = "disputes"

    id = Column(String(36), primary_key=True, comment="争议ID（UUID）")
    transaction_id = Column(
        String(36),
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="关联交易ID"
    )
    external_ref = Column(String(200), unique=True, nullable=False, comment="处理方争议ID")

    amount = Column(Integer, nullable=False, comment="争议金额")
    reason = Column(String(100), nullable=True, comment="争议原因")
    status = Column(
        String(32),
        nullable=False,
        default="needs_response",
        comment="争议状态: needs_response/under_review/won/lost/charge_refunded"
    )
    resolution = Column(Text, nullable=True, comment="处理说明")
    resolved_by = Column(String(64), nullable=True, comment="处理人ID")

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, comment="创建时间")
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, comment="更新时间")
    resolved_at = Column(DateTime(timezone=True), nullable=True, comment="结案时间")

    def __repr__(self):
        return f"<DisputeModel(id='{self.id}', transaction_id='{self.transaction_id}', status='{self.status}')>"


class ReceiptModel(Base):
    """收据数据库模型（只插入，不更新）"""
    __tablename__ = "receipts"

    id = Column(String(36), primary_key=True, comment="收据ID（UUID）")
    transaction_id = Column(
        String(36),
        ForeignKey("transactions.id", ondelete="RESTRICT"),
        unique=True,
        nullable=False,
        comment="关联交易ID"
    )
    receipt_number = Column(String(64), unique=True, nullable=False, comment="收据编号")

    buyer_id = Column(String(64), nullable=False, index=True, comment="买家ID")
    item_id = Column(String(64), nullable=False, comment="商品ID")
    item_title = Column(String(255), nullable=False, comment="商品标题")
    creator_id = Column(String(64), nullable=False, comment="创作者ID")
    creator_name = Column(String(255), nullable=False, comment="创作者名称")

    amount = Column(Integer, nullable=False, comment="交易总额")
    currency = Column(String(3), nullable=False, comment="货币代码")
    platform_fee = Column(Integer, nullable=False, comment="平台佣金")
    creator_revenue = Column(Integer, nullable=False, comment="创作者收入")
    payment_method = Column(String(50), nullable=False, comment="支付方式")

    purchase_date = Column(DateTime(timezone=True), nullable=False, comment="购买时间")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, comment="创建时间")

    def __repr__(self):
        return f"<ReceiptModel(receipt_number='{self.receipt_number}', transaction_id='{self.transaction_id}')>"


class ProcessedEventModel(Base):
    """已处理的处理方事件（去重集合）"""
    __tablename__ = "processed_events"

    event_id = Column(String(255), primary_key=True, comment="处理方事件ID")
    event_type = Column(String(64), nullable=False, comment="内部事件类型")
    external_ref = Column(String(200), nullable=False, index=True, comment="交易外部引用")
    outcome = Column(String(32), nullable=False, comment="处理结果: applied/ignored/repaired")
    transaction_id = Column(String(36), nullable=True, comment="关联交易ID")
    processed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, comment="处理时间")


class DeadLetterEventModel(Base):
    """重试耗尽的孤儿事件"""
    __tablename__ = "dead_letter_events"

    event_id = Column(String(255), primary_key=True, comment="处理方事件ID")
    event_type = Column(String(64), nullable=False, comment="内部事件类型")
    external_ref = Column(String(200), nullable=False, index=True, comment="交易外部引用")
    payload = Column(JSON, nullable=False, comment="规范化后的事件")
    reason = Column(Text, nullable=False, comment="最后一次失败原因")
    attempts = Column(Integer, nullable=False, default=1, comment="尝试次数")

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, comment="创建时间")
    last_attempt_at = Column(DateTime(timezone=True), nullable=True, comment="最后尝试时间")
    resolved_at = Column(DateTime(timezone=True), nullable=True, index=True, comment="重放成功时间")

"""create_settlement_ledger_tables

Revision ID: 4b1e9c2d7a31
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '4b1e9c2d7a31'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False, comment='更新时间'),
    ]


def upgrade() -> None:
    op.create_table(
        'transactions',
        sa.Column('id', sa.String(length=36), nullable=False, comment='交易ID（UUID）'),
        sa.Column('buyer_id', sa.String(length=64), nullable=False, comment='买家ID'),
        sa.Column('item_id', sa.String(length=64), nullable=False, comment='商品ID'),
        sa.Column('creator_id', sa.String(length=64), nullable=False, comment='创作者ID'),
        sa.Column('amount', sa.Integer(), nullable=False, comment='交易总额'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD', comment='货币代码 ISO-4217'),
        sa.Column('platform_fee', sa.Integer(), nullable=False, comment='平台佣金'),
        sa.Column('creator_revenue', sa.Integer(), nullable=False, comment='创作者收入'),
        sa.Column('refunded_amount', sa.Integer(), nullable=False, server_default='0', comment='已退款金额'),
        sa.Column('external_ref', sa.String(length=200), nullable=False, comment='支付处理方 intent ID'),
        sa.Column('payment_method', sa.String(length=50), nullable=False, server_default='card', comment='支付方式'),
        sa.Column('receipt_number', sa.String(length=64), nullable=True, comment='收据编号'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending', comment='交易状态'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1', comment='版本号'),
        *_timestamps(),
        sa.Column('succeeded_at', sa.DateTime(timezone=True), nullable=True, comment='支付成功时间'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_ref'),
        sa.UniqueConstraint('receipt_number'),
        comment='交易表，每次购买尝试一行',
    )
    op.create_index('ix_transactions_item_id', 'transactions', ['item_id'])
    op.create_index('ix_transactions_status', 'transactions', ['status'])
    op.create_index('ix_transactions_creator_status', 'transactions', ['creator_id', 'status'])
    op.create_index('ix_transactions_buyer_created', 'transactions', ['buyer_id', 'created_at'])
    op.create_index('ix_transactions_buyer_item', 'transactions', ['buyer_id', 'item_id'])

    op.create_table(
        'earnings',
        sa.Column('id', sa.String(length=36), nullable=False, comment='收益ID（UUID）'),
        sa.Column('creator_id', sa.String(length=64), nullable=False, comment='创作者ID'),
        sa.Column('transaction_id', sa.String(length=36), nullable=False, comment='关联交易ID'),
        sa.Column('item_id', sa.String(length=64), nullable=False, comment='商品ID'),
        sa.Column('gross_amount', sa.Integer(), nullable=False, comment='交易总额'),
        sa.Column('platform_fee', sa.Integer(), nullable=False, comment='平台佣金'),
        sa.Column('net_amount', sa.Integer(), nullable=False, comment='应付创作者净额'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='available', comment='收益状态'),
        sa.Column('payout_date', sa.DateTime(timezone=True), nullable=True, comment='打款时间'),
        sa.Column('forfeited_at', sa.DateTime(timezone=True), nullable=True, comment='清零时间'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1', comment='版本号'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['transaction_id'], ['transactions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('transaction_id'),
        comment='创作者收益表，与成功交易一一对应',
    )
    op.create_index('ix_earnings_creator_status', 'earnings', ['creator_id', 'status'])
    op.create_index('ix_earnings_creator_created', 'earnings', ['creator_id', 'created_at'])

    op.create_table(
        'refunds',
        sa.Column('id', sa.String(length=36), nullable=False, comment='退款ID（UUID）'),
        sa.Column('transaction_id', sa.String(length=36), nullable=False, comment='关联交易ID'),
        sa.Column('external_ref', sa.String(length=200), nullable=True, comment='处理方退款ID'),
        sa.Column('amount', sa.Integer(), nullable=False, comment='退款金额'),
        sa.Column('reason', sa.String(length=50), nullable=False, comment='退款原因'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending', comment='退款状态'),
        sa.Column('requested_by', sa.String(length=64), nullable=True, comment='操作人ID'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['transaction_id'], ['transactions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_refunds_transaction_id', 'refunds', ['transaction_id'])
    op.create_index('ix_refunds_external_ref', 'refunds', ['external_ref'])

    op.create_table(
        'disputes',
        sa.Column('id', sa.String(length=36), nullable=False, comment='争议ID（UUID）'),
        sa.Column('transaction_id', sa.String(length=36), nullable=False, comment='关联交易ID'),
        sa.Column('external_ref', sa.String(length=200), nullable=False, comment='处理方争议ID'),
        sa.Column('amount', sa.Integer(), nullable=False, comment='争议金额'),
        sa.Column('reason', sa.String(length=100), nullable=True, comment='争议原因'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='needs_response', comment='争议状态'),
        sa.Column('resolution', sa.Text(), nullable=True, comment='处理说明'),
        sa.Column('resolved_by', sa.String(length=64), nullable=True, comment='处理人ID'),
        *_timestamps(),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True, comment='结案时间'),
        sa.ForeignKeyConstraint(['transaction_id'], ['transactions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_ref'),
    )
    op.create_index('ix_disputes_transaction_id', 'disputes', ['transaction_id'])

    op.create_table(
        'receipts',
        sa.Column('id', sa.String(length=36), nullable=False, comment='收据ID（UUID）'),
        sa.Column('transaction_id', sa.String(length=36), nullable=False, comment='关联交易ID'),
        sa.Column('receipt_number', sa.String(length=64), nullable=False, comment='收据编号'),
        sa.Column('buyer_id', sa.String(length=64), nullable=False, comment='买家ID'),
        sa.Column('item_id', sa.String(length=64), nullable=False, comment='商品ID'),
        sa.Column('item_title', sa.String(length=255), nullable=False, comment='商品标题'),
        sa.Column('creator_id', sa.String(length=64), nullable=False, comment='创作者ID'),
        sa.Column('creator_name', sa.String(length=255), nullable=False, comment='创作者名称'),
        sa.Column('amount', sa.Integer(), nullable=False, comment='交易总额'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码'),
        sa.Column('platform_fee', sa.Integer(), nullable=False, comment='平台佣金'),
        sa.Column('creator_revenue', sa.Integer(), nullable=False, comment='创作者收入'),
        sa.Column('payment_method', sa.String(length=50), nullable=False, comment='支付方式'),
        sa.Column('purchase_date', sa.DateTime(timezone=True), nullable=False, comment='购买时间'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False, comment='创建时间'),
        sa.ForeignKeyConstraint(['transaction_id'], ['transactions.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('transaction_id'),
        sa.UniqueConstraint('receipt_number'),
    )
    op.create_index('ix_receipts_buyer_id', 'receipts', ['buyer_id'])

    op.create_table(
        'processed_events',
        sa.Column('event_id', sa.String(length=255), nullable=False, comment='处理方事件ID'),
        sa.Column('event_type', sa.String(length=64), nullable=False, comment='内部事件类型'),
        sa.Column('external_ref', sa.String(length=200), nullable=False, comment='交易外部引用'),
        sa.Column('outcome', sa.String(length=32), nullable=False, comment='处理结果'),
        sa.Column('transaction_id', sa.String(length=36), nullable=True, comment='关联交易ID'),
        sa.Column('processed_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False, comment='处理时间'),
        sa.PrimaryKeyConstraint('event_id'),
    )
    op.create_index('ix_processed_events_external_ref', 'processed_events', ['external_ref'])

    op.create_table(
        'dead_letter_events',
        sa.Column('event_id', sa.String(length=255), nullable=False, comment='处理方事件ID'),
        sa.Column('event_type', sa.String(length=64), nullable=False, comment='内部事件类型'),
        sa.Column('external_ref', sa.String(length=200), nullable=False, comment='交易外部引用'),
        sa.Column('payload', sa.JSON(), nullable=False, comment='规范化后的事件'),
        sa.Column('reason', sa.Text(), nullable=False, comment='最后一次失败原因'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='1', comment='尝试次数'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False, comment='创建时间'),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True, comment='最后尝试时间'),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True, comment='重放成功时间'),
        sa.PrimaryKeyConstraint('event_id'),
    )
    op.create_index('ix_dead_letter_events_external_ref', 'dead_letter_events', ['external_ref'])
    op.create_index('ix_dead_letter_events_resolved_at', 'dead_letter_events', ['resolved_at'])


def downgrade() -> None:
    op.drop_table('dead_letter_events')
    op.drop_table('processed_events')
    op.drop_table('receipts')
    op.drop_table('disputes')
    op.drop_table('refunds')
    op.drop_table('earnings')
    op.drop_table('transactions')

"""create_orders_and_credit_accounts

Revision ID: 3c5e9a1f7b21
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3c5e9a1f7b21'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create orders table
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False, comment='支付渠道: alipay/afdian/paddle/lemonsqueezy'),
        sa.Column('external_reference', sa.String(length=128), nullable=False, comment='商户订单号（渠道回传）'),
        sa.Column('provider_trade_id', sa.String(length=128), nullable=True, comment='渠道交易号'),
        sa.Column('user_id', sa.String(length=64), nullable=True, comment='用户ID，未匹配记录可为空'),
        sa.Column('amount_minor', sa.BigInteger(), nullable=False, comment='金额（分）'),
        sa.Column('credits_requested', sa.Integer(), nullable=False, server_default='0', comment='应发放积分'),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='pending', comment='订单状态'),
        sa.Column('match_method', sa.String(length=32), nullable=True, comment='匹配方式'),
        sa.Column('failure_reason', sa.String(length=64), nullable=True, comment='失败原因'),
        sa.Column('raw_provider_payload', sa.JSON(), nullable=True, comment='渠道原始通知'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True, comment='支付确认时间'),
        sa.Column('credited_at', sa.DateTime(timezone=True), nullable=True, comment='积分入账时间（幂等标记）'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'external_reference', name='uq_orders_provider_external_reference'),
        sa.CheckConstraint('amount_minor > 0', name='ck_orders_amount_positive'),
        comment='支付订单表，记录待支付/已支付/已入账等状态'
    )

    # Create indexes
    op.create_index('ix_orders_id', 'orders', ['id'], unique=False)
    op.create_index('ix_orders_provider', 'orders', ['provider'], unique=False)
    op.create_index('ix_orders_provider_trade_id', 'orders', ['provider_trade_id'], unique=False)
    op.create_index('ix_orders_user_id', 'orders', ['user_id'], unique=False)
    op.create_index('ix_orders_status', 'orders', ['status'], unique=False)
    op.create_index('ix_orders_match_method', 'orders', ['match_method'], unique=False)
    op.create_index('ix_orders_status_created', 'orders', ['status', 'created_at'], unique=False)
    op.create_index('ix_orders_provider_status_amount', 'orders', ['provider', 'status', 'amount_minor'], unique=False)
    op.create_index('ix_orders_user_created', 'orders', ['user_id', 'created_at'], unique=False)

    # Create credit_accounts table
    op.create_table(
        'credit_accounts',
        sa.Column('user_id', sa.String(length=64), nullable=False, comment='用户ID'),
        sa.Column('balance', sa.BigInteger(), nullable=False, server_default='0', comment='积分余额'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.PrimaryKeyConstraint('user_id'),
        sa.CheckConstraint('balance >= 0', name='ck_credit_accounts_balance_non_negative'),
        comment='积分账户表，余额只由入账服务修改'
    )


def downgrade() -> None:
    op.drop_table('credit_accounts')

    # Drop indexes
    op.drop_index('ix_orders_user_created', table_name='orders')
    op.drop_index('ix_orders_provider_status_amount', table_name='orders')
    op.drop_index('ix_orders_status_created', table_name='orders')
    op.drop_index('ix_orders_match_method', table_name='orders')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_index('ix_orders_user_id', table_name='orders')
    op.drop_index('ix_orders_provider_trade_id', table_name='orders')
    op.drop_index('ix_orders_provider', table_name='orders')
    op.drop_index('ix_orders_id', table_name='orders')

    # Drop table
    op.drop_table('orders')

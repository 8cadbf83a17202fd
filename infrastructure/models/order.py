"""
订单与积分账户数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, JSON,
    Index, UniqueConstraint, CheckConstraint,
)
from datetime import datetime, timezone

from .base import Base


class OrderModel(Base):
    """
    订单数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.order.entity.Order 中
    """
    __tablename__ = "orders"

    # 主键
    id = Column(Integer, primary_key=True, index=True)

    # 渠道与引用
    provider = Column(String(32), nullable=False, index=True, comment="支付渠道: alipay/afdian/paddle/lemonsqueezy")
    external_reference = Column(String(128), nullable=False, comment="商户订单号（渠道回传）")
    provider_trade_id = Column(String(128), nullable=True, index=True, comment="渠道交易号")

    # 用户与金额（最小货币单位，整数）
    user_id = Column(String(64), nullable=True, index=True, comment="用户ID，未匹配记录可为空")
    amount_minor = Column(BigInteger, nullable=False, comment="金额（分）")
    credits_requested = Column(Integer, nullable=False, default=0, comment="应发放积分")

    # 状态
    status = Column(
        String(32),
        nullable=False,
        default="pending",
        index=True,
        comment="订单状态: pending/paid/pending_credits/credited/failed/cancelled/expired"
    )
    match_method = Column(String(32), nullable=True, index=True, comment="匹配方式")
    failure_reason = Column(String(64), nullable=True, comment="失败原因")

    # 审计数据（使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突）
    raw_provider_payload = Column(JSON, nullable=True, comment="渠道原始通知")
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    # 时间戳
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )
    paid_at = Column(DateTime(timezone=True), nullable=True, comment="支付确认时间")
    credited_at = Column(DateTime(timezone=True), nullable=True, comment="积分入账时间（幂等标记）")

    # 索引与约束
    __table_args__ = (
        UniqueConstraint("provider", "external_reference", name="uq_orders_provider_external_reference"),
        CheckConstraint("amount_minor > 0", name="ck_orders_amount_positive"),
        Index("ix_orders_status_created", "status", "created_at"),
        Index("ix_orders_provider_status_amount", "provider", "status", "amount_minor"),
        Index("ix_orders_user_created", "user_id", "created_at"),
    )

    def __repr__(self):
        return (
            f"<OrderModel(id={self.id}, provider='{self.provider}', "
            f"external_reference='{self.external_reference}', amount_minor={self.amount_minor}, "
            f"status='{self.status}')>"
        )


class CreditAccountModel(Base):
    """
    积分账户数据库模型

    每个用户一行，余额只由入账服务通过条件更新修改
    """
    __tablename__ = "credit_accounts"

    user_id = Column(String(64), primary_key=True, comment="用户ID")
    balance = Column(BigInteger, nullable=False, default=0, comment="积分余额")

    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_accounts_balance_non_negative"),
    )

    def __repr__(self):
        return f"<CreditAccountModel(user_id='{self.user_id}', balance={self.balance})>"

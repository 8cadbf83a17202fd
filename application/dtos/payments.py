"""
Payment DTOs (Pydantic v2) used at application boundaries.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Literal
from pydantic import BaseModel, Field, ConfigDict, field_validator

from domain.order.entity import Order, OrderStatus

# Providers accepted by order creation / status lookups
SUPPORTED_PROVIDERS = ("alipay", "afdian", "paddle", "lemonsqueezy")
PROVIDER_ALIASES = {"ali": "alipay", "lemon": "lemonsqueezy"}


def normalize_provider(value: str) -> str:
    name = (value or "").strip().lower()
    return PROVIDER_ALIASES.get(name, name)


class WebhookAck(BaseModel):
    """渠道原生的回执（状态码 + 响应体），由路由层渲染"""
    status_code: int = 200
    body: Any
    media_type: Literal["application/json", "text/plain"] = "application/json"


class CreateOrderRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_\-]+$")
    provider: str
    amount_minor: int = Field(gt=0)

    @field_validator("provider")
    @classmethod
    def _validate_provider(cls, v: str) -> str:
        name = normalize_provider(v)
        if name not in SUPPORTED_PROVIDERS:
            raise ValueError(f"unsupported provider '{v}'")
        return name


class OrderDTO(BaseModel):
    """订单对外视图；不包含渠道原始通知"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    provider: str
    external_reference: str
    provider_trade_id: Optional[str] = None
    user_id: Optional[str] = None
    amount_minor: int
    credits_requested: int
    status: str
    client_status: str
    match_method: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    credited_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, order: Order) -> "OrderDTO":
        return cls(
            id=order.id,
            provider=order.provider,
            external_reference=order.external_reference,
            provider_trade_id=order.provider_trade_id,
            user_id=order.user_id,
            amount_minor=order.amount_minor,
            credits_requested=order.credits_requested,
            status=order.status.value,
            client_status=order.client_status(),
            match_method=order.match_method,
            failure_reason=order.failure_reason,
            created_at=order.created_at,
            paid_at=order.paid_at,
            credited_at=order.credited_at,
        )


class CreatedOrderDTO(OrderDTO):
    cancelled_previous: int = 0
    package_id: Optional[str] = None


class OrderStatusDTO(BaseModel):
    external_reference: str
    provider: str
    status: str
    client_status: str
    credits: int
    amount_minor: int
    is_paid: bool
    is_pending: bool
    needs_retry: bool
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    credited_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, order: Order) -> "OrderStatusDTO":
        return cls(
            external_reference=order.external_reference,
            provider=order.provider,
            status=order.status.value,
            client_status=order.client_status(),
            credits=order.credits_requested,
            amount_minor=order.amount_minor,
            is_paid=order.status in (OrderStatus.PAID, OrderStatus.PENDING_CREDITS, OrderStatus.CREDITED),
            is_pending=order.status == OrderStatus.PENDING,
            needs_retry=order.status == OrderStatus.PENDING_CREDITS,
            created_at=order.created_at,
            paid_at=order.paid_at,
            credited_at=order.credited_at,
        )


class UserOrdersDTO(BaseModel):
    user_id: str
    total: int
    status_count: dict[str, int]
    orders: list[OrderDTO]


class RetrySummary(BaseModel):
    checked: int = 0
    credited: int = 0
    already_processed: int = 0
    failed: int = 0


class ExpirySummary(BaseModel):
    expired: int = 0
    cutoff: datetime


class HealthAlert(BaseModel):
    level: Literal["warning", "critical"] = "warning"
    metric: str
    message: str
    value: float
    threshold: float


class HealthReportDTO(BaseModel):
    status: Literal["healthy", "warning"]
    stale_pending: int
    pending_credits: int
    failed: int
    unmatched: int
    fallback_matched: int
    recent_terminal: int
    recent_credited: int
    success_rate: Optional[float] = None
    alerts: list[HealthAlert] = Field(default_factory=list)
    generated_at: datetime


class AmountGroupDTO(BaseModel):
    provider: str
    amount_minor: int
    count: int


class ReconciliationReportDTO(BaseModel):
    duplicate_amount_groups: list[AmountGroupDTO]
    fallback_orders: list[OrderDTO]
    unmatched_orders: list[OrderDTO]
    stale_pending_orders: list[OrderDTO]
    generated_at: datetime

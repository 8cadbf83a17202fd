"""
Payment reconciliation settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings; every key is read from the environment
with the ``PAYMENT__`` prefix, e.g. ``PAYMENT__PADDLE__WEBHOOK_SECRET`` or
``PAYMENT__SCHEDULER__CRON_SECRET``.
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field

from domain.order.service import PricePoint, PriceTable


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks


class MatchingSettings(BaseModel):
    # Price point / fallback tolerance in minor units (one cent)
    epsilon_minor: int = 1
    fallback_window_minutes: int = 30
    fallback_candidate_limit: int = 10


class RecoverySettings(BaseModel):
    pending_expiry_hours: int = 24
    # A ``paid`` order older than this was left behind by a crash between match and apply
    paid_grace_seconds: int = 300
    batch_size: int = 200
    store_retry_attempts: int = 3
    store_retry_backoff: float = 0.1


class HealthSettings(BaseModel):
    window_hours: int = 24
    stale_pending_minutes: int = 60
    stale_pending_threshold: int = 10
    pending_credits_threshold: int = 5
    min_success_rate: float = 0.8
    min_terminal_orders: int = 10
    reconciliation_pending_minutes: int = 30


class SchedulerSettings(BaseModel):
    cron_secret: Optional[str] = None


class AlipaySettings(BaseModel):
    app_id: Optional[str] = None
    # PEM text or bare base64 body; *_path takes a file instead
    alipay_public_key: Optional[str] = None
    alipay_public_key_path: Optional[str] = None
    sign_type: str = "RSA2"


class AfdianSettings(BaseModel):
    user_id: Optional[str] = None
    webhook_token: Optional[str] = None
    public_key: Optional[str] = None
    public_key_path: Optional[str] = None


class PaddleSettings(BaseModel):
    webhook_secret: Optional[str] = None


class LemonSqueezySettings(BaseModel):
    webhook_secret: Optional[str] = None


class PricePointSettings(BaseModel):
    amount_minor: int = Field(gt=0)
    credits: int = Field(ge=0)
    package_id: Optional[str] = None


def _default_price_points() -> dict[str, list[PricePointSettings]]:
    cny = [
        PricePointSettings(amount_minor=1990, credits=120, package_id="basic"),
        PricePointSettings(amount_minor=4990, credits=350, package_id="pro"),
        PricePointSettings(amount_minor=9990, credits=800, package_id="max"),
        PricePointSettings(amount_minor=19800, credits=2000, package_id="ultra"),
    ]
    paddle = [
        PricePointSettings(amount_minor=1990, credits=120, package_id="pri_01kcgzydjfrdf1eqfpym4t7hqm"),
        PricePointSettings(amount_minor=4990, credits=350, package_id="pri_01kch00w9w72wzh6tht09np39x"),
        PricePointSettings(amount_minor=9990, credits=800, package_id="pri_01kch024613khh68yej04d7hpj"),
        PricePointSettings(amount_minor=19800, credits=2000, package_id="pri_01kch02zrznhwxb2yb9as0cjtf"),
    ]
    return {
        "alipay": list(cny),
        "afdian": list(cny),
        "lemonsqueezy": list(cny),
        "paddle": paddle,
    }


class PaymentSettings(BaseSettings):
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    matching: MatchingSettings = Field(default_factory=MatchingSettings)
    recovery: RecoverySettings = Field(default_factory=RecoverySettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)

    alipay: AlipaySettings = Field(default_factory=AlipaySettings)
    afdian: AfdianSettings = Field(default_factory=AfdianSettings)
    paddle: PaddleSettings = Field(default_factory=PaddleSettings)
    lemonsqueezy: LemonSqueezySettings = Field(default_factory=LemonSqueezySettings)

    price_points: dict[str, list[PricePointSettings]] = Field(default_factory=_default_price_points)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    def price_table(self) -> PriceTable:
        return PriceTable({
            provider: [PricePoint(p.amount_minor, p.credits, p.package_id) for p in points]
            for provider, points in self.price_points.items()
        })


payment_settings = PaymentSettings()

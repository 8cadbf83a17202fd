"""
Factory for payment gateway clients.
"""
from __future__ import annotations

from typing import Optional

from core.settings import PaymentSettings, payment_settings
from application.ports.payment_gateway import PaymentGateway
from infrastructure.external.payments.exceptions import UnsupportedProviderError


def get_payment_gateway(provider: str, settings: Optional[PaymentSettings] = None) -> PaymentGateway:
    cfg = settings or payment_settings
    name = (provider or "").strip().lower()
    if name in {"alipay", "ali"}:
        from .alipay_client import AlipayClient
        return AlipayClient(cfg)
    if name == "afdian":
        from .afdian_client import AfdianClient
        return AfdianClient(cfg)
    if name == "paddle":
        from .paddle_client import PaddleClient
        return PaddleClient(cfg)
    if name in {"lemonsqueezy", "lemon"}:
        from .lemonsqueezy_client import LemonSqueezyClient
        return LemonSqueezyClient(cfg)
    raise UnsupportedProviderError(name)


__all__ = ["get_payment_gateway"]

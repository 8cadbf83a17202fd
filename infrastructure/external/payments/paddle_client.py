"""
Paddle Billing webhook adapter.

Signature header: ``Paddle-Signature: ts=<unix>;h1=<hex>`` where h1 is
HMAC-SHA256(secret, "{ts}:{raw_body}"). Several h1 values may be present
while a secret is being rotated; any match is accepted.
"""
from __future__ import annotations

import time
from typing import Any, Callable, Mapping, Optional

from core.settings import PaymentSettings
from domain.order.events import PaymentEvent
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentSignatureError,
)
from shared.codes.payment_codes import PROVIDER_PAID_STATUSES


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class PaddleClient(BasePaymentClient):
    provider = "paddle"

    def __init__(self, settings: Optional[PaymentSettings] = None, *, clock: Callable[[], float] = time.time) -> None:
        super().__init__(settings)
        self._clock = clock

    @staticmethod
    def _parse_signature_header(value: str) -> tuple[Optional[str], list[str]]:
        ts: Optional[str] = None
        signatures: list[str] = []
        for part in value.split(";"):
            key, _, item = part.strip().partition("=")
            if key == "ts":
                ts = item.strip()
            elif key == "h1" and item.strip():
                signatures.append(item.strip())
        return ts, signatures

    def _verify(self, headers: Mapping[str, Any], body: bytes) -> None:
        secret = self._settings.paddle.webhook_secret
        if not secret:
            raise PaymentSignatureError("Webhook secret not configured", provider=self.provider)
        header = self._header(headers, "Paddle-Signature")
        if not header:
            raise PaymentSignatureError("Missing Paddle-Signature header", provider=self.provider)
        ts, signatures = self._parse_signature_header(header)
        if not ts or not ts.isdigit() or not signatures:
            raise PaymentSignatureError("Malformed Paddle-Signature header", provider=self.provider)

        tolerance = self._settings.webhook.tolerance_seconds
        if abs(self._clock() - int(ts)) > tolerance:
            raise PaymentSignatureError(
                "Signature timestamp outside tolerance",
                provider=self.provider,
                details={"ts": ts, "tolerance_seconds": tolerance},
            )

        message = ts.encode("ascii") + b":" + body
        # 逐个比较，不因首个不匹配提前退出
        matched = [self._verify_hmac_sha256(secret, message, sig) for sig in signatures]
        if not any(matched):
            raise PaymentSignatureError("Invalid signature", provider=self.provider)

    def parse_webhook(self, headers: Mapping[str, Any], body: bytes) -> Optional[PaymentEvent]:  # type: ignore[override]
        self._verify(headers, body)
        payload = self._json(body)

        event_type = payload.get("event_type")
        if event_type not in PROVIDER_PAID_STATUSES[self.provider]:
            self._log("payment_webhook_ignored", event_type=event_type)
            return None

        data = self._object(payload, "data", field="data")
        custom = self._object(data, "custom_data", field="data.custom_data")
        details = self._object(data, "details", field="data.details")
        totals = self._object(details, "totals", field="data.details.totals")
        items = data.get("items") or []
        if not isinstance(items, list):
            raise PaymentProviderError("data.items must be a list", provider=self.provider)
        price_id = None
        if items and isinstance(items[0], dict):
            price_id = self._object(items[0], "price", field="data.items[0].price").get("id")

        transaction_id = data.get("id")
        if not transaction_id and not custom.get("out_trade_no"):
            raise PaymentProviderError("Transaction carries no identifier", provider=self.provider)

        event = PaymentEvent(
            provider=self.provider,
            paid_amount_minor=self._minor(totals.get("total"), field="data.details.totals.total"),
            external_reference=_text(custom.get("out_trade_no")),
            provider_trade_id=str(transaction_id) if transaction_id else None,
            user_reference=_text(custom.get("user_id")),
            package_id=price_id,
            raw_payload=payload,
        )
        self._log(
            "payment_webhook_verified",
            event_type=event_type,
            external_reference=event.external_reference,
            provider_trade_id=event.provider_trade_id,
            amount_minor=event.paid_amount_minor,
        )
        return event

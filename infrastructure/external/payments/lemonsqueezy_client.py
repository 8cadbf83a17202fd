"""
Lemon Squeezy webhook adapter (``X-Signature`` = hex HMAC-SHA256 of the raw body).
"""
from __future__ import annotations

from typing import Any, Mapping, Optional

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


class LemonSqueezyClient(BasePaymentClient):
    provider = "lemonsqueezy"

    def parse_webhook(self, headers: Mapping[str, Any], body: bytes) -> Optional[PaymentEvent]:  # type: ignore[override]
        secret = self._settings.lemonsqueezy.webhook_secret
        if not secret:
            raise PaymentSignatureError("Webhook secret not configured", provider=self.provider)
        if not self._verify_hmac_sha256(secret, body, self._header(headers, "X-Signature")):
            raise PaymentSignatureError("Invalid signature", provider=self.provider)

        payload = self._json(body)
        meta = self._object(payload, "meta", field="meta")
        data = self._object(payload, "data", field="data")
        attributes = self._object(data, "attributes", field="data.attributes")

        event_name = meta.get("event_name")
        status = attributes.get("status")
        if event_name not in PROVIDER_PAID_STATUSES[self.provider] or status != "paid":
            self._log("payment_webhook_ignored", event_name=event_name, order_status=status)
            return None

        custom = self._object(meta, "custom_data", field="meta.custom_data")
        first_item = self._object(attributes, "first_order_item", field="data.attributes.first_order_item")
        variant_id = first_item.get("variant_id")
        order_id = data.get("id")
        if not order_id and not custom.get("out_trade_no"):
            raise PaymentProviderError("Order carries no identifier", provider=self.provider)

        event = PaymentEvent(
            provider=self.provider,
            paid_amount_minor=self._minor(attributes.get("total"), field="data.attributes.total"),
            external_reference=_text(custom.get("out_trade_no")),
            provider_trade_id=str(order_id) if order_id else None,
            user_reference=_text(custom.get("user_id")),
            package_id=str(variant_id) if variant_id is not None else None,
            raw_payload=payload,
        )
        self._log(
            "payment_webhook_verified",
            external_reference=event.external_reference,
            provider_trade_id=event.provider_trade_id,
            amount_minor=event.paid_amount_minor,
        )
        return event

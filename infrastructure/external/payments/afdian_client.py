"""
Afdian (爱发电) webhook adapter.

爱发电的订单通知是 JSON：``{"ec":200,"em":"ok","data":{"type":"order","order":{...},"sign":"..."}}``。
认证方式两种，至少配置一种，全部配置时全部校验：
1. ``Authorization: Bearer <webhook_token>``（常量时间比较）
2. ``data.sign``：RSA-SHA256 签名，签名内容为 out_trade_no + user_id + plan_id + total_amount

下单时 remark 透传了我们的商户订单号（``userId|credits|ms|rand``），
因此它同时作为 external_reference 与 user_reference。
"""
from __future__ import annotations

from typing import Any, Mapping, Optional

from application.dtos.payments import WebhookAck
from domain.order.events import PaymentEvent
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentSignatureError,
)
from shared.codes.payment_codes import PROVIDER_PAID_STATUSES


class AfdianClient(BasePaymentClient):
    provider = "afdian"

    def success_response(self) -> WebhookAck:
        return WebhookAck(status_code=200, body={"ec": 200, "em": "success"})

    def failure_response(self, status_code: int, reason: str) -> WebhookAck:
        return WebhookAck(status_code=status_code, body={"ec": status_code, "em": reason})

    @staticmethod
    def signing_content(order: Mapping[str, Any]) -> str:
        return "".join(
            str(order.get(key) if order.get(key) is not None else "")
            for key in ("out_trade_no", "user_id", "plan_id", "total_amount")
        )

    def _check_token(self, headers: Mapping[str, Any], token: str) -> None:
        auth = self._header(headers, "Authorization") or ""
        scheme, _, provided = auth.partition(" ")
        if scheme.lower() != "bearer" or not self._secrets_equal(token, provided.strip()):
            raise PaymentSignatureError("Invalid or missing bearer token", provider=self.provider)

    def parse_webhook(self, headers: Mapping[str, Any], body: bytes) -> Optional[PaymentEvent]:  # type: ignore[override]
        cfg = self._settings.afdian
        has_key = bool(cfg.public_key or cfg.public_key_path)
        if not cfg.webhook_token and not has_key:
            raise PaymentSignatureError("No webhook verifier configured", provider=self.provider)

        if cfg.webhook_token:
            self._check_token(headers, cfg.webhook_token)

        try:
            payload = self._json(body)
        except PaymentProviderError as exc:
            if has_key:
                # 签名在报文内部，无法解析即无法验签
                raise PaymentSignatureError("Unverifiable body", provider=self.provider) from exc
            raise

        data = payload.get("data") or {}
        order = data.get("order") if isinstance(data, dict) else None
        if has_key:
            sign = data.get("sign") if isinstance(data, dict) else None
            if not isinstance(order, dict) or not sign:
                raise PaymentSignatureError("Missing data.sign", provider=self.provider)
            public_key = self._load_public_key(cfg.public_key, cfg.public_key_path)
            if not self._verify_rsa_sha256(public_key, self.signing_content(order).encode("utf-8"), str(sign)):
                raise PaymentSignatureError("Invalid signature", provider=self.provider)

        event_type = data.get("type") if isinstance(data, dict) else None
        status = str(order.get("status")) if isinstance(order, dict) else ""
        if event_type != "order" or status not in PROVIDER_PAID_STATUSES[self.provider]:
            self._log("payment_webhook_ignored", event_type=event_type, order_status=status)
            return None

        remark = str(order.get("remark") or "").strip() or None
        trade_no = str(order.get("out_trade_no") or "").strip() or None
        if not remark and not trade_no:
            raise PaymentProviderError("Order carries neither remark nor out_trade_no", provider=self.provider)

        event = PaymentEvent(
            provider=self.provider,
            paid_amount_minor=self._major_to_minor(order.get("total_amount"), field="order.total_amount"),
            external_reference=remark,
            provider_trade_id=trade_no,
            user_reference=remark,
            package_id=str(order.get("plan_id")) if order.get("plan_id") else None,
            raw_payload=payload,
        )
        self._log(
            "payment_webhook_verified",
            external_reference=event.external_reference,
            provider_trade_id=event.provider_trade_id,
            amount_minor=event.paid_amount_minor,
        )
        return event

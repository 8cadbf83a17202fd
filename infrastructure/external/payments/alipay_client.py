"""
Alipay asynchronous notification adapter.

Alipay posts form-encoded parameters signed with RSA2 (SHA256withRSA): the
signed content is every non-empty parameter except ``sign``/``sign_type``,
sorted by key and joined as ``k=v&k=v``. Amounts arrive in yuan.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional
from urllib.parse import parse_qsl

from application.dtos.payments import WebhookAck
from domain.order.events import PaymentEvent
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentSignatureError,
)
from shared.codes.payment_codes import PROVIDER_PAID_STATUSES


class AlipayClient(BasePaymentClient):
    provider = "alipay"

    def success_response(self) -> WebhookAck:
        return WebhookAck(status_code=200, body="success", media_type="text/plain")

    def failure_response(self, status_code: int, reason: str) -> WebhookAck:
        return WebhookAck(status_code=status_code, body="fail", media_type="text/plain")

    @staticmethod
    def signing_content(params: Mapping[str, str]) -> str:
        unsigned_items = [
            f"{k}={v}" for k, v in sorted(params.items())
            if k not in ("sign", "sign_type") and v is not None and v != ""
        ]
        return "&".join(unsigned_items)

    def parse_webhook(self, headers: Mapping[str, Any], body: bytes) -> Optional[PaymentEvent]:  # type: ignore[override]
        cfg = self._settings.alipay
        try:
            params = dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
        except UnicodeDecodeError as exc:
            raise PaymentSignatureError("Undecodable notification body", provider=self.provider) from exc

        sign = params.get("sign")
        if not sign:
            raise PaymentSignatureError("Missing sign", provider=self.provider)
        sign_type = params.get("sign_type") or "RSA2"
        if sign_type.upper() != "RSA2":
            raise PaymentSignatureError(f"Unsupported sign_type: {sign_type}", provider=self.provider)

        public_key = self._load_public_key(cfg.alipay_public_key, cfg.alipay_public_key_path)
        if not self._verify_rsa_sha256(public_key, self.signing_content(params).encode("utf-8"), sign):
            raise PaymentSignatureError("Invalid signature", provider=self.provider)

        # 通知必须发给本应用
        if cfg.app_id and params.get("app_id") != cfg.app_id:
            raise PaymentSignatureError(
                "app_id mismatch",
                provider=self.provider,
                details={"app_id": params.get("app_id")},
            )

        trade_status = params.get("trade_status", "")
        audit = {k: v for k, v in params.items() if k != "sign"}
        if trade_status not in PROVIDER_PAID_STATUSES[self.provider]:
            self._log("payment_webhook_ignored", trade_status=trade_status, out_trade_no=params.get("out_trade_no"))
            return None

        if not params.get("out_trade_no") and not params.get("trade_no"):
            raise PaymentProviderError("Notification carries neither out_trade_no nor trade_no", provider=self.provider)

        event = PaymentEvent(
            provider=self.provider,
            paid_amount_minor=self._major_to_minor(params.get("total_amount"), field="total_amount"),
            external_reference=params.get("out_trade_no") or None,
            provider_trade_id=params.get("trade_no") or None,
            user_reference=params.get("passback_params") or None,
            raw_payload=audit,
        )
        self._log(
            "payment_webhook_verified",
            external_reference=event.external_reference,
            provider_trade_id=event.provider_trade_id,
            amount_minor=event.paid_amount_minor,
        )
        return event

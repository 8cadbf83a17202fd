"""
Base payment client implementing shared webhook concerns: key loading,
signature verification, amount parsing, provider-native acks and logging.

Concrete providers subclass and implement ``parse_webhook``.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Mapping, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from application.dtos.payments import WebhookAck
from application.ports.payment_gateway import PaymentGateway
from domain.order.events import PaymentEvent
from infrastructure.external.payments.exceptions import (
    PaymentProviderError,
    PaymentSignatureError,
)


logger = get_logger(__name__)


def normalize_public_key(raw: str) -> bytes:
    """PEM 文本、转义换行的环境变量或裸 base64 公钥体统一为 PEM bytes"""
    text = raw.strip().replace("\\n", "\n")
    if len(text) >= 2 and text[0] == text[-1] == '"':
        text = text[1:-1].strip()
    if "-----BEGIN" not in text:
        body = "".join(text.split())
        lines = [body[i:i + 64] for i in range(0, len(body), 64)]
        text = "-----BEGIN PUBLIC KEY-----\n" + "\n".join(lines) + "\n-----END PUBLIC KEY-----\n"
    return text.encode("ascii", errors="ignore")


class BasePaymentClient(PaymentGateway):
    provider: str = "base"

    def __init__(self, settings: Optional[PaymentSettings] = None) -> None:
        self._settings = settings or payment_settings

    def parse_webhook(self, headers: Mapping[str, Any], body: bytes) -> Optional[PaymentEvent]:  # type: ignore[override]
        raise NotImplementedError

    # Provider-native acks; JSON providers share this shape
    def success_response(self) -> WebhookAck:
        return WebhookAck(status_code=200, body={"received": True})

    def failure_response(self, status_code: int, reason: str) -> WebhookAck:
        return WebhookAck(status_code=status_code, body={"received": False, "error": reason})

    # Helpers
    @staticmethod
    def _header(headers: Mapping[str, Any], name: str) -> Optional[str]:
        value = headers.get(name)
        if value is None:
            lowered = name.lower()
            for key, item in headers.items():
                if str(key).lower() == lowered:
                    value = item
                    break
        return str(value) if value is not None else None

    @staticmethod
    def _read_key(value: str) -> str:
        if "-----BEGIN" not in value:
            try:
                p = Path(value)
                if p.is_file():
                    return p.read_text(encoding="utf-8")
            except OSError:
                pass
        return value

    def _load_public_key(self, value: Optional[str], path: Optional[str] = None) -> rsa.RSAPublicKey:
        raw = self._read_key(path) if path else value
        if not raw:
            raise PaymentSignatureError("Public key not configured", provider=self.provider)
        try:
            key = serialization.load_pem_public_key(normalize_public_key(raw))
        except (ValueError, TypeError) as exc:
            raise PaymentSignatureError("Configured public key is invalid", provider=self.provider) from exc
        if not isinstance(key, rsa.RSAPublicKey):
            raise PaymentSignatureError("Configured public key is not RSA", provider=self.provider)
        return key

    @staticmethod
    def _verify_rsa_sha256(public_key: rsa.RSAPublicKey, message: bytes, signature_b64: str) -> bool:
        """SHA256withRSA (PKCS#1 v1.5) over message with a base64 signature"""
        try:
            signature = base64.b64decode(signature_b64)
        except (binascii.Error, ValueError):
            return False
        try:
            public_key.verify(signature, message, padding.PKCS1v15(), hashes.SHA256())
        except InvalidSignature:
            return False
        return True

    @staticmethod
    def _verify_hmac_sha256(secret: str, message: bytes, provided_hex: Optional[str]) -> bool:
        if not provided_hex:
            return False
        expected = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected.encode("ascii"), provided_hex.strip().lower().encode("utf-8"))

    @staticmethod
    def _secrets_equal(expected: str, provided: Optional[str]) -> bool:
        if provided is None:
            return False
        return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))

    def _json(self, body: bytes) -> dict[str, Any]:
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise PaymentProviderError("Malformed JSON body", provider=self.provider) from exc
        if not isinstance(payload, dict):
            raise PaymentProviderError("JSON body must be an object", provider=self.provider)
        return payload

    def _object(self, container: Mapping[str, Any], key: str, *, field: str) -> dict[str, Any]:
        """取嵌套对象；缺失视为空对象，类型不对视为报文错误"""
        value = container.get(key)
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise PaymentProviderError(f"{field} must be an object", provider=self.provider)
        return value

    def _major_to_minor(self, value: Any, *, field: str) -> int:
        """'19.90' 元 → 1990 分；精度超过分或非正数视为报文错误"""
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as exc:
            raise PaymentProviderError(f"Invalid amount in {field}: {value!r}", provider=self.provider) from exc
        if not amount.is_finite():
            raise PaymentProviderError(f"Invalid amount in {field}: {value!r}", provider=self.provider)
        minor = amount * 100
        if minor != minor.to_integral_value():
            raise PaymentProviderError(f"Amount in {field} has sub-minor precision: {value!r}", provider=self.provider)
        return self._positive(int(minor), field=field)

    def _minor(self, value: Any, *, field: str) -> int:
        """已是最小货币单位的整数或数字字符串"""
        if isinstance(value, bool):
            raise PaymentProviderError(f"Invalid amount in {field}: {value!r}", provider=self.provider)
        if isinstance(value, int):
            return self._positive(value, field=field)
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            return self._positive(int(value.strip()), field=field)
        raise PaymentProviderError(f"Invalid amount in {field}: {value!r}", provider=self.provider)

    def _positive(self, amount: int, *, field: str) -> int:
        if amount <= 0:
            raise PaymentProviderError(
                f"Non-positive amount in {field}: {amount}",
                provider=self.provider,
                details={"field": field},
            )
        return amount

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )

"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from application.dtos.payments import WebhookAck
from domain.order.events import PaymentEvent


@runtime_checkable
class PaymentGateway(Protocol):
    """Inbound notification protocol for third-party payment providers.

    ``parse_webhook`` authenticates the raw request and returns a PaymentEvent,
    or None for a verified notification that is not a completed payment.
    It must raise PaymentSignatureError for any missing/invalid credential.
    """

    provider: str

    def parse_webhook(self, headers: Mapping[str, Any], body: bytes) -> Optional[PaymentEvent]: ...

    def success_response(self) -> WebhookAck: ...

    def failure_response(self, status_code: int, reason: str) -> WebhookAck: ...

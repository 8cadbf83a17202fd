"""
Inbound payment notifications.

A PaymentEvent is the provider-agnostic form of "money moved" produced by a
provider adapter after signature verification. It is ephemeral: it is folded
into an Order and never persisted on its own. Providers may deliver the same
event (same provider_trade_id) more than once.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from domain.common.exceptions import DomainValidationException


@dataclass(frozen=True)
class PaymentEvent:
    provider: str
    paid_amount_minor: int
    external_reference: Optional[str] = None
    provider_trade_id: Optional[str] = None
    # Opaque memo / custom data assigned at checkout that carries a user identity
    user_reference: Optional[str] = None
    package_id: Optional[str] = None
    raw_payload: dict[str, Any] = field(default_factory=dict)
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if isinstance(self.paid_amount_minor, bool) or not isinstance(self.paid_amount_minor, int):
            raise DomainValidationException(
                f"paid_amount_minor must be an integer: {self.paid_amount_minor!r}",
                field="paid_amount_minor",
            )
        if self.paid_amount_minor <= 0:
            raise DomainValidationException(
                f"paid_amount_minor must be positive: {self.paid_amount_minor}",
                field="paid_amount_minor",
            )

    @property
    def has_reference(self) -> bool:
        return bool(self.external_reference)

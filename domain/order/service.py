"""
订单领域服务 - 价格档位、引用编解码与对账相关的业务异常
"""
from __future__ import annotations

import hashlib
import json
import re
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode

from .entity import Order


class OrderAlreadyExistsException(BusinessException):
    """(provider, external_reference) 已存在"""
    def __init__(self, provider: str, external_reference: str):
        super().__init__(
            code=PaymentCode.ORDER_ALREADY_EXISTS,
            message=f"订单 {provider}:{external_reference} 已存在",
            error_type="ORDER_ALREADY_EXISTS",
            details={"provider": provider, "external_reference": external_reference},
        )


class PricePointUnknownException(BusinessException):
    """金额不在配置的价格档位内"""
    def __init__(self, provider: str, amount_minor: int):
        super().__init__(
            code=PaymentCode.PRICE_POINT_UNKNOWN,
            message=f"渠道 {provider} 不支持金额 {amount_minor}",
            error_type="PRICE_POINT_UNKNOWN",
            details={"provider": provider, "amount_minor": amount_minor},
            field="amount_minor",
        )


class AmountMismatchError(BusinessException):
    """到账金额与订单金额不一致：订单已置为 failed，需人工复核"""
    def __init__(self, order: Order, paid_amount_minor: int):
        super().__init__(
            code=PaymentCode.AMOUNT_MISMATCH,
            message=f"订单 {order.external_reference} 金额不符: 应付 {order.amount_minor}, 实付 {paid_amount_minor}",
            error_type="AMOUNT_MISMATCH",
            details={
                "order_id": order.id,
                "expected_amount_minor": order.amount_minor,
                "paid_amount_minor": paid_amount_minor,
            },
        )
        self.order = order


class UnmatchedEventError(BusinessException):
    """到账通知无法匹配任何订单：已落库 UNMATCHED_ 记录供人工对账"""
    def __init__(self, order: Order):
        super().__init__(
            code=PaymentCode.UNMATCHED_EVENT,
            message=f"无法匹配的到账通知: {order.external_reference}",
            error_type="UNMATCHED_EVENT",
            details={
                "order_id": order.id,
                "external_reference": order.external_reference,
                "reason": order.failure_reason,
            },
        )
        self.order = order


class AlreadyProcessed(BusinessException):
    """重复投递：订单已处理完毕，按成功处理"""
    def __init__(self, order: Order):
        super().__init__(
            code=PaymentCode.ALREADY_PROCESSED,
            message=f"订单 {order.external_reference} 已处理",
            error_type="ALREADY_PROCESSED",
            details={"order_id": order.id, "status": order.status.value},
        )
        self.order = order


@dataclass(frozen=True)
class PricePoint:
    amount_minor: int
    credits: int
    package_id: Optional[str] = None


@dataclass(frozen=True)
class DecodedUserReference:
    user_id: str
    credits_hint: Optional[int] = None


class PriceTable:
    """渠道价格档位表：金额（分）→ 积分"""

    def __init__(self, points: Mapping[str, Iterable[PricePoint]]):
        self._points: dict[str, tuple[PricePoint, ...]] = {
            provider.lower(): tuple(items) for provider, items in points.items()
        }

    def points_for(self, provider: str) -> tuple[PricePoint, ...]:
        return self._points.get(provider.lower(), ())

    def lookup(self, provider: str, amount_minor: int, epsilon_minor: int = 0) -> Optional[PricePoint]:
        """返回与金额最接近且在 epsilon 内的档位"""
        best: Optional[PricePoint] = None
        for point in self.points_for(provider):
            diff = abs(point.amount_minor - amount_minor)
            if diff > epsilon_minor:
                continue
            if best is None or diff < abs(best.amount_minor - amount_minor):
                best = point
        return best

    def lookup_package(self, provider: str, package_id: str) -> Optional[PricePoint]:
        for point in self.points_for(provider):
            if point.package_id and point.package_id == package_id:
                return point
        return None


_USER_ID_RE = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")
_REF_ALPHABET = string.ascii_uppercase + string.digits
_REMARK_ALPHABET = string.ascii_lowercase + string.digits

# 各渠道商户订单号前缀；afdian 使用 remark 透传格式
_REFERENCE_PREFIX = {
    "alipay": "AL",
    "paddle": "PD",
    "lemonsqueezy": "LS",
}


def decode_user_reference(raw: Optional[str]) -> Optional[DecodedUserReference]:
    """
    解码 remark / custom_data 中携带的用户身份

    支持两种格式：
    1. ``userId|credits|timestamp|random``（下单时生成的 remark）
    2. 直接的 userId
    """
    if not raw:
        return None
    value = raw.strip()
    credits_hint: Optional[int] = None
    if "|" in value:
        parts = value.split("|")
        value = parts[0].strip()
        if len(parts) > 1 and parts[1].strip().isdigit():
            credits_hint = int(parts[1].strip())
    if not _USER_ID_RE.match(value):
        return None
    return DecodedUserReference(user_id=value, credits_hint=credits_hint)


def generate_external_reference(provider: str, user_id: str, credits: int, now: Optional[datetime] = None) -> str:
    """生成商户订单号（下单时发送给渠道并由渠道回传）"""
    ts = now or datetime.now(timezone.utc)
    millis = int(ts.timestamp() * 1000)
    name = provider.lower()
    if name == "afdian":
        rand = "".join(secrets.choice(_REMARK_ALPHABET) for _ in range(11))
        return f"{user_id}|{credits}|{millis}|{rand}"
    prefix = _REFERENCE_PREFIX.get(name, name[:2].upper())
    rand = "".join(secrets.choice(_REF_ALPHABET) for _ in range(6))
    return f"{prefix}{millis}{rand}"


def unmatched_reference_suffix(provider_trade_id: Optional[str], raw_payload: Optional[dict[str, Any]]) -> str:
    """UNMATCHED_ 记录的确定性后缀，保证重复投递命中唯一约束"""
    if provider_trade_id:
        return provider_trade_id[:100]
    blob = json.dumps(raw_payload or {}, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()[:32]

"""
订单领域实体 - 购买意图及其生命周期（聚合根）
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from domain.common.exceptions import DomainValidationException


class OrderStatus(str, Enum):
    """订单状态枚举"""
    PENDING = "pending"                  # 待支付
    PAID = "paid"                        # 已支付，待入账
    PENDING_CREDITS = "pending_credits"  # 入账未确认，等待恢复任务重试
    CREDITED = "credited"                # 积分已入账
    FAILED = "failed"                    # 金额不符 / 无法匹配
    CANCELLED = "cancelled"              # 被同用户的新订单取代
    EXPIRED = "expired"                  # 超时未支付


class MatchMethod(str, Enum):
    EXTERNAL_REFERENCE = "external_reference"
    USER_REFERENCE = "user_reference"
    AMOUNT_TIME_FALLBACK = "amount_time_fallback"


class FailureReason(str, Enum):
    AMOUNT_MISMATCH = "amount_mismatch"
    UNMATCHED = "unmatched"
    AMBIGUOUS_MATCH = "ambiguous_match"
    ORDER_NOT_PAYABLE = "order_not_payable"


TERMINAL_STATUSES = frozenset({OrderStatus.CREDITED, OrderStatus.CANCELLED, OrderStatus.EXPIRED})
CREDITABLE_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.PENDING_CREDITS})
UNMATCHED_PREFIX = "UNMATCHED_"


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Order:
    """
    订单聚合根

    业务规则：
    1. (provider, external_reference) 全局唯一
    2. 金额以最小货币单位（分）整数存储
    3. 状态转换必须遵循状态机，终态（credited/cancelled/expired）不可变更
    4. credited_at 只设置一次，兼作入账幂等标记
    """

    id: Optional[int]
    provider: str
    external_reference: str
    user_id: Optional[str]
    amount_minor: int
    credits_requested: int
    status: OrderStatus = OrderStatus.PENDING
    provider_trade_id: Optional[str] = None
    match_method: Optional[str] = None
    failure_reason: Optional[str] = None
    raw_provider_payload: Optional[dict[str, Any]] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    credited_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not isinstance(self.status, OrderStatus):
            self.status = OrderStatus(self.status)
        self._validate_amounts()
        if not self.external_reference:
            raise DomainValidationException("external_reference 不能为空", field="external_reference")
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.paid_at = _ensure_utc(self.paid_at)
        self.credited_at = _ensure_utc(self.credited_at)
        if self.metadata is None:
            self.metadata = {}

    def _validate_amounts(self) -> None:
        """业务规则：金额为正整数，积分非负"""
        if isinstance(self.amount_minor, bool) or not isinstance(self.amount_minor, int):
            raise DomainValidationException(
                f"金额必须为整数最小货币单位: {self.amount_minor!r}",
                field="amount_minor",
            )
        if self.amount_minor <= 0:
            raise DomainValidationException(f"订单金额必须大于0: {self.amount_minor}", field="amount_minor")
        if self.credits_requested < 0:
            raise DomainValidationException(
                f"积分数不能为负: {self.credits_requested}",
                field="credits_requested",
            )

    # ------------------------------------------------------------------
    # 工厂方法
    # ------------------------------------------------------------------
    @classmethod
    def new_pending(
        cls,
        *,
        provider: str,
        external_reference: str,
        user_id: str,
        amount_minor: int,
        credits_requested: int,
        metadata: Optional[dict[str, Any]] = None,
    ) -> "Order":
        now = _utcnow()
        return cls(
            id=None,
            provider=provider,
            external_reference=external_reference,
            user_id=user_id,
            amount_minor=amount_minor,
            credits_requested=credits_requested,
            status=OrderStatus.PENDING,
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )

    @classmethod
    def synthesize_paid(
        cls,
        *,
        provider: str,
        external_reference: str,
        provider_trade_id: Optional[str],
        user_id: str,
        amount_minor: int,
        credits_requested: int,
        raw_payload: Optional[dict[str, Any]],
        metadata: Optional[dict[str, Any]] = None,
    ) -> "Order":
        """渠道先于客户端意图到达时，直接以 paid 状态创建订单"""
        now = _utcnow()
        meta = dict(metadata or {})
        meta["matchMethod"] = MatchMethod.USER_REFERENCE.value
        meta["synthesized"] = True
        return cls(
            id=None,
            provider=provider,
            external_reference=external_reference,
            user_id=user_id,
            amount_minor=amount_minor,
            credits_requested=credits_requested,
            status=OrderStatus.PAID,
            provider_trade_id=provider_trade_id,
            match_method=MatchMethod.USER_REFERENCE.value,
            raw_provider_payload=raw_payload,
            metadata=meta,
            created_at=now,
            updated_at=now,
            paid_at=now,
        )

    @classmethod
    def unmatched(
        cls,
        *,
        provider: str,
        reference_suffix: str,
        provider_trade_id: Optional[str],
        user_id: Optional[str],
        amount_minor: int,
        reason: FailureReason,
        raw_payload: Optional[dict[str, Any]],
        metadata: Optional[dict[str, Any]] = None,
    ) -> "Order":
        """无法匹配的到账记录：以 failed 落库供人工对账，绝不丢弃"""
        now = _utcnow()
        return cls(
            id=None,
            provider=provider,
            external_reference=f"{UNMATCHED_PREFIX}{reference_suffix}",
            user_id=user_id,
            amount_minor=amount_minor,
            credits_requested=0,
            status=OrderStatus.FAILED,
            provider_trade_id=provider_trade_id,
            failure_reason=reason.value,
            raw_provider_payload=raw_payload,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )

    # ------------------------------------------------------------------
    # 状态转换
    # ------------------------------------------------------------------
    def _require(self, allowed: set[OrderStatus] | frozenset[OrderStatus], target: OrderStatus) -> None:
        if self.status not in allowed:
            raise DomainValidationException(
                f"无法从状态 {self.status.value} 转换为 {target.value}",
                field="status",
                details={"order_id": self.id, "from": self.status.value, "to": target.value},
            )

    def mark_paid(
        self,
        *,
        provider_trade_id: Optional[str],
        raw_payload: Optional[dict[str, Any]] = None,
        match_method: MatchMethod = MatchMethod.EXTERNAL_REFERENCE,
    ) -> None:
        """
        标记已支付

        业务规则：只能从 pending 转为 paid
        """
        self._require({OrderStatus.PENDING}, OrderStatus.PAID)
        self.status = OrderStatus.PAID
        if provider_trade_id:
            self.provider_trade_id = provider_trade_id
        if raw_payload is not None:
            self.raw_provider_payload = raw_payload
        self.match_method = match_method.value
        self.metadata["matchMethod"] = match_method.value
        self.paid_at = _utcnow()
        self.updated_at = self.paid_at

    def mark_failed(self, reason: FailureReason, **details: Any) -> None:
        """
        标记失败（金额不符等），失败订单永不入账

        业务规则：只能从 pending 转为 failed
        """
        self._require({OrderStatus.PENDING}, OrderStatus.FAILED)
        self.status = OrderStatus.FAILED
        self.failure_reason = reason.value
        if details:
            self.metadata.setdefault("failure", {}).update(details)
        self.updated_at = _utcnow()

    def mark_pending_credits(self, error: Optional[str] = None) -> None:
        """入账无法确认时进入中间态，由恢复任务重试"""
        self._require(CREDITABLE_STATUSES, OrderStatus.PENDING_CREDITS)
        self.status = OrderStatus.PENDING_CREDITS
        self.metadata["creditAttempts"] = self.credit_attempts + 1
        if error:
            self.metadata["lastCreditError"] = error[:500]
        self.updated_at = _utcnow()

    def mark_credited(self) -> None:
        """标记积分已入账；credited_at 一经设置不再改变"""
        self._require(CREDITABLE_STATUSES, OrderStatus.CREDITED)
        now = _utcnow()
        self.status = OrderStatus.CREDITED
        if self.credited_at is None:
            self.credited_at = now
        self.updated_at = now

    def mark_expired(self) -> None:
        self._require({OrderStatus.PENDING}, OrderStatus.EXPIRED)
        self.status = OrderStatus.EXPIRED
        self.updated_at = _utcnow()

    def mark_cancelled(self) -> None:
        self._require({OrderStatus.PENDING}, OrderStatus.CANCELLED)
        self.status = OrderStatus.CANCELLED
        self.updated_at = _utcnow()

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------
    @property
    def credit_attempts(self) -> int:
        try:
            return int(self.metadata.get("creditAttempts", 0))
        except (TypeError, ValueError):
            return 0

    @property
    def is_unmatched(self) -> bool:
        return self.external_reference.startswith(UNMATCHED_PREFIX)

    def is_terminal(self) -> bool:
        """检查是否为终态"""
        return self.status in TERMINAL_STATUSES

    def is_creditable(self) -> bool:
        return self.status in CREDITABLE_STATUSES

    def client_status(self) -> str:
        """面向轮询客户端的简化状态"""
        if self.status == OrderStatus.PENDING:
            return "pending"
        if self.status in CREDITABLE_STATUSES:
            return "paid-not-yet-credited"
        if self.status == OrderStatus.CREDITED:
            return "credited"
        return "failed"

"""
支付健康监控（application/services）- 只读统计与对账报表
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import MatchMethod, OrderStatus
from application.dtos.payments import (
    AmountGroupDTO,
    HealthAlert,
    HealthReportDTO,
    OrderDTO,
    ReconciliationReportDTO,
)


logger = get_logger(__name__)

# 计入成功率分母的最终结果
_OUTCOME_STATUSES = (
    OrderStatus.CREDITED,
    OrderStatus.FAILED,
    OrderStatus.CANCELLED,
    OrderStatus.EXPIRED,
)


class HealthMonitor:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        *,
        window_hours: int = 24,
        stale_pending_minutes: int = 60,
        stale_pending_threshold: int = 10,
        pending_credits_threshold: int = 5,
        min_success_rate: float = 0.8,
        min_terminal_orders: int = 10,
        reconciliation_pending_minutes: int = 30,
        report_limit: int = 50,
    ) -> None:
        self._uow_factory = uow_factory
        self._window = timedelta(hours=window_hours)
        self._stale_pending = timedelta(minutes=stale_pending_minutes)
        self._stale_pending_threshold = stale_pending_threshold
        self._pending_credits_threshold = pending_credits_threshold
        self._min_success_rate = min_success_rate
        self._min_terminal_orders = min_terminal_orders
        self._reconciliation_pending = timedelta(minutes=reconciliation_pending_minutes)
        self._report_limit = report_limit

    async def health_report(self, now: Optional[datetime] = None) -> HealthReportDTO:
        now = now or datetime.now(timezone.utc)
        async with self._uow_factory(readonly=True) as uow:
            repo = uow.order_repository
            stale_pending = await repo.count_by_status(OrderStatus.PENDING, created_before=now - self._stale_pending)
            pending_credits = await repo.count_by_status(OrderStatus.PENDING_CREDITS)
            failed = await repo.count_by_status(OrderStatus.FAILED)
            unmatched = await repo.count_unmatched()
            fallback_matched = await repo.count_by_match_method(MatchMethod.AMOUNT_TIME_FALLBACK.value)
            recent = await repo.count_statuses_since(now - self._window)

        recent_terminal = sum(recent.get(s.value, 0) for s in _OUTCOME_STATUSES)
        recent_credited = recent.get(OrderStatus.CREDITED.value, 0)
        success_rate = round(recent_credited / recent_terminal, 4) if recent_terminal else None

        alerts: list[HealthAlert] = []
        if stale_pending > self._stale_pending_threshold:
            alerts.append(HealthAlert(
                metric="stale_pending",
                message=f"{stale_pending} pending orders older than {int(self._stale_pending.total_seconds() // 60)} minutes",
                value=stale_pending,
                threshold=self._stale_pending_threshold,
            ))
        if pending_credits > self._pending_credits_threshold:
            alerts.append(HealthAlert(
                level="critical",
                metric="pending_credits",
                message=f"{pending_credits} orders waiting for credits",
                value=pending_credits,
                threshold=self._pending_credits_threshold,
            ))
        if (
            success_rate is not None
            and recent_terminal > self._min_terminal_orders
            and success_rate < self._min_success_rate
        ):
            alerts.append(HealthAlert(
                metric="success_rate",
                message=f"Success rate dropped to {success_rate:.2%}",
                value=success_rate,
                threshold=self._min_success_rate,
            ))

        report = HealthReportDTO(
            status="warning" if alerts else "healthy",
            stale_pending=stale_pending,
            pending_credits=pending_credits,
            failed=failed,
            unmatched=unmatched,
            fallback_matched=fallback_matched,
            recent_terminal=recent_terminal,
            recent_credited=recent_credited,
            success_rate=success_rate,
            alerts=alerts,
            generated_at=now,
        )
        if alerts:
            logger.warning("payment_health_alerts", alerts=[a.message for a in alerts])
        else:
            logger.info("payment_health_ok", recent_terminal=recent_terminal, success_rate=success_rate)
        return report

    async def reconciliation_report(self, now: Optional[datetime] = None) -> ReconciliationReportDTO:
        """人工对账报表：同金额 pending 分组、兜底匹配订单、未匹配记录、超时 pending"""
        now = now or datetime.now(timezone.utc)
        async with self._uow_factory(readonly=True) as uow:
            repo = uow.order_repository
            groups = await repo.pending_amount_groups(min_size=2)
            fallback = await repo.list_by_match_method(MatchMethod.AMOUNT_TIME_FALLBACK.value, limit=self._report_limit)
            unmatched = await repo.list_unmatched(limit=self._report_limit)
            pending = await repo.list_by_status(OrderStatus.PENDING, limit=self._report_limit)

        cutoff = now - self._reconciliation_pending
        stale = [o for o in pending if o.created_at is not None and o.created_at < cutoff]
        return ReconciliationReportDTO(
            duplicate_amount_groups=[
                AmountGroupDTO(provider=p, amount_minor=a, count=c) for p, a, c in groups
            ],
            fallback_orders=[OrderDTO.from_entity(o) for o in fallback],
            unmatched_orders=[OrderDTO.from_entity(o) for o in unmatched],
            stale_pending_orders=[OrderDTO.from_entity(o) for o in stale],
            generated_at=now,
        )

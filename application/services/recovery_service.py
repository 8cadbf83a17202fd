"""
恢复任务（application/services）- 定时重试未确认的入账、过期长期未支付的订单

两个操作都可以并发、重复执行：入账依赖条件更新幂等，过期是单条条件 UPDATE。
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from core.logging_config import get_logger
from domain.common.exceptions import TransientStoreFailure
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import OrderStatus
from application.dtos.payments import ExpirySummary, RetrySummary
from application.services.credit_ledger import CreditLedgerApplier


logger = get_logger(__name__)


class RecoveryService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        applier: CreditLedgerApplier,
        *,
        batch_size: int = 200,
        paid_grace_seconds: int = 300,
        pending_expiry_hours: int = 24,
    ) -> None:
        self._uow_factory = uow_factory
        self._applier = applier
        self._batch_size = batch_size
        self._paid_grace = timedelta(seconds=paid_grace_seconds)
        self._pending_expiry = timedelta(hours=pending_expiry_hours)

    async def retry_pending_credits(self, now: Optional[datetime] = None) -> RetrySummary:
        """重新入账 pending_credits 订单，以及匹配后崩溃遗留、超过宽限期的 paid 订单"""
        now = now or datetime.now(timezone.utc)
        async with self._uow_factory(readonly=True) as uow:
            parked = await uow.order_repository.list_by_status(OrderStatus.PENDING_CREDITS, limit=self._batch_size)
            stranded = await uow.order_repository.list_by_status(
                OrderStatus.PAID,
                limit=self._batch_size,
                updated_before=now - self._paid_grace,
            )

        summary = RetrySummary()
        for order in [*parked, *stranded]:
            summary.checked += 1
            logger.info(
                "credit_retry_attempt",
                order_id=order.id,
                status=order.status.value,
                attempt=order.credit_attempts + 1,
            )
            try:
                result = await self._applier.apply(order.id)
            except TransientStoreFailure as exc:
                # 订单已停在 pending_credits，下一轮继续
                summary.failed += 1
                logger.warning("credit_retry_failed", order_id=order.id, error=exc.details)
                continue
            if result.applied:
                summary.credited += 1
            else:
                summary.already_processed += 1

        logger.info("credit_retry_completed", **summary.model_dump())
        return summary

    async def expire_stale_orders(self, now: Optional[datetime] = None) -> ExpirySummary:
        """pending 超过 pending_expiry_hours 的订单置为 expired；不触碰其它状态"""
        now = now or datetime.now(timezone.utc)
        cutoff = now - self._pending_expiry
        async with self._uow_factory() as uow:
            expired = await uow.order_repository.expire_pending_before(cutoff)
        logger.info("orders_expired", expired=expired, cutoff=cutoff.isoformat())
        return ExpirySummary(expired=expired, cutoff=cutoff)

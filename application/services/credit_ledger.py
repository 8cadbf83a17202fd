"""
积分入账（application/services）

同一事务内：
    UPDATE orders SET status='credited' WHERE id=? AND status IN ('paid','pending_credits')
    UPDATE credit_accounts SET balance = balance + credits WHERE user_id=?
条件更新命中 0 行即幂等空操作，保证每个订单最多入账一次。
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.logging_config import get_logger
from domain.common.exceptions import DomainValidationException, OrderNotFoundException, TransientStoreFailure
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import CREDITABLE_STATUSES, Order


logger = get_logger(__name__)


@dataclass(frozen=True)
class ApplyResult:
    applied: bool
    order: Optional[Order]


class CreditLedgerApplier:
    """积分入账服务：余额的唯一写入方"""

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        *,
        retry_attempts: int = 3,
        retry_backoff: float = 0.1,
    ) -> None:
        self._uow_factory = uow_factory
        self._retry_attempts = max(1, retry_attempts)
        self._retry_backoff = retry_backoff

    async def apply(self, order_id: int) -> ApplyResult:
        """入账；瞬时故障重试耗尽后把订单停在 pending_credits 并向上抛出"""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._retry_attempts),
                wait=wait_exponential(multiplier=self._retry_backoff, min=self._retry_backoff, max=2.0),
                retry=retry_if_exception_type(TransientStoreFailure),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.info(
                            "credit_apply_retry",
                            order_id=order_id,
                            attempt=attempt.retry_state.attempt_number,
                        )
                    return await self._apply_once(order_id)
        except TransientStoreFailure as exc:
            await self._park(order_id, exc)
            raise

    async def _apply_once(self, order_id: int) -> ApplyResult:
        order = await self._load(order_id)
        if not order.is_creditable():
            logger.info("credit_apply_noop", order_id=order_id, status=order.status.value)
            return ApplyResult(False, order)
        if not order.user_id:
            raise DomainValidationException(
                f"订单 {order_id} 缺少 user_id，无法入账",
                field="user_id",
                details={"order_id": order_id},
            )

        # 账户在独立事务中幂等创建，避免唯一冲突回滚入账事务
        async with self._uow_factory() as uow:
            await uow.account_repository.ensure(order.user_id)

        async with self._uow_factory() as uow:
            order.mark_credited()
            # 只切换状态列，保留并发写入的 creditAttempts/lastCreditError
            hit = await uow.order_repository.mark_credited(order.id, order.credited_at, CREDITABLE_STATUSES)
            if not hit:
                current = await uow.order_repository.get_by_id(order_id)
                logger.info(
                    "credit_apply_noop",
                    order_id=order_id,
                    status=current.status.value if current else None,
                )
                return ApplyResult(False, current)
            if not await uow.account_repository.increment(order.user_id, order.credits_requested):
                raise DomainValidationException(
                    f"积分账户不存在: {order.user_id}",
                    field="user_id",
                    details={"order_id": order_id},
                )
            order = await uow.order_repository.get_by_id(order_id) or order
            await uow.commit()

        logger.info(
            "order_credited",
            order_id=order.id,
            user_id=order.user_id,
            credits=order.credits_requested,
            match_method=order.match_method,
        )
        return ApplyResult(True, order)

    async def _load(self, order_id: int) -> Order:
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.order_repository.get_by_id(order_id)
        if order is None:
            raise OrderNotFoundException(str(order_id))
        return order

    async def _park(self, order_id: int, exc: TransientStoreFailure) -> None:
        """paid → pending_credits（creditAttempts += 1），交给恢复任务"""
        error = str((exc.details or {}).get("error") or exc.message)
        try:
            async with self._uow_factory() as uow:
                order = await uow.order_repository.get_by_id(order_id)
                if order is None or not order.is_creditable():
                    return
                order.mark_pending_credits(error)
                hit = await uow.order_repository.compare_and_set(order, CREDITABLE_STATUSES)
        except TransientStoreFailure as park_exc:
            logger.error("credit_park_failed", order_id=order_id, error=str(park_exc.details))
            return
        logger.warning(
            "credit_apply_deferred",
            order_id=order_id,
            parked=hit,
            credit_attempts=order.credit_attempts,
            error=error,
        )

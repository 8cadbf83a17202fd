"""
订单匹配（application/services）- 把渠道到账通知归属到唯一订单

匹配优先级（严格按序，前一步命中则不再尝试后一步）：
1. 精确匹配：(provider, external_reference)；未命中时按渠道交易号查找已确认的订单（重复投递）
2. 用户引用：user_reference 解码出已存在的积分账户，且金额命中价格档位 → 直接合成 paid 订单
3. 金额 + 时间窗口兜底：唯一的同渠道 pending 订单；多于一个候选时拒绝（ambiguous_match）
4. 无法匹配：落库 UNMATCHED_ 记录（failed），供人工对账

所有状态写入都是条件更新，命中 0 行说明其他进程抢先，重新读取后按新状态处理。
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, List, Optional

from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import (
    FailureReason,
    MatchMethod,
    Order,
    OrderStatus,
    UNMATCHED_PREFIX,
)
from domain.order.events import PaymentEvent
from domain.order.service import (
    DecodedUserReference,
    OrderAlreadyExistsException,
    PriceTable,
    decode_user_reference,
    unmatched_reference_suffix,
)


logger = get_logger(__name__)

# 条件更新未命中时重新读取的上限；状态只会单向前进，实际不会超过 2 次
_MAX_RESOLVE_ROUNDS = 3


class MatchOutcome(str, Enum):
    MATCHED = "matched"                      # 订单已进入 paid，等待入账
    ALREADY_PROCESSED = "already_processed"  # 重复投递
    AMOUNT_MISMATCH = "amount_mismatch"      # 订单已置为 failed
    UNMATCHED = "unmatched"                  # 已落库 UNMATCHED_ 记录


@dataclass(frozen=True)
class MatchResult:
    order: Order
    outcome: MatchOutcome
    match_method: Optional[MatchMethod] = None


class OrderMatcher:
    """订单匹配器"""

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        price_table: PriceTable,
        *,
        epsilon_minor: int = 1,
        fallback_window_minutes: int = 30,
        fallback_candidate_limit: int = 10,
    ) -> None:
        self._uow_factory = uow_factory
        self._price_table = price_table
        self._epsilon = epsilon_minor
        self._fallback_window = timedelta(minutes=fallback_window_minutes)
        self._candidate_limit = fallback_candidate_limit

    async def match(self, event: PaymentEvent) -> MatchResult:
        existing = await self._find_existing(event)
        if existing is not None:
            order, method = existing
            return await self._resolve(order, event, method)

        decoded = decode_user_reference(event.user_reference)
        if decoded is not None:
            synthesized = await self._synthesize(event, decoded)
            if synthesized is not None:
                return synthesized

        candidates = await self._fallback_candidates(event, decoded)
        if len(candidates) == 1:
            logger.warning(
                "order_fallback_matched",
                provider=event.provider,
                order_id=candidates[0].id,
                amount_minor=event.paid_amount_minor,
                provider_trade_id=event.provider_trade_id,
            )
            return await self._resolve(candidates[0], event, MatchMethod.AMOUNT_TIME_FALLBACK)
        if len(candidates) > 1:
            return await self._record_unmatched(
                event,
                FailureReason.AMBIGUOUS_MATCH,
                user_id=decoded.user_id if decoded else None,
                candidateOrderIds=[c.id for c in candidates],
            )
        return await self._record_unmatched(
            event,
            FailureReason.UNMATCHED,
            user_id=decoded.user_id if decoded else None,
        )

    # ------------------------------------------------------------------
    # 1. 精确匹配
    # ------------------------------------------------------------------
    async def _find_existing(self, event: PaymentEvent) -> Optional[tuple[Order, MatchMethod]]:
        async with self._uow_factory(readonly=True) as uow:
            if event.external_reference:
                order = await uow.order_repository.get_by_external_reference(event.provider, event.external_reference)
                if order is not None:
                    return order, MatchMethod.EXTERNAL_REFERENCE
            if event.provider_trade_id:
                order = await uow.order_repository.get_by_provider_trade_id(event.provider, event.provider_trade_id)
                if order is not None:
                    return order, MatchMethod.EXTERNAL_REFERENCE
        return None

    # ------------------------------------------------------------------
    # 2. 用户引用合成
    # ------------------------------------------------------------------
    async def _synthesize(self, event: PaymentEvent, decoded: DecodedUserReference) -> Optional[MatchResult]:
        reference = event.external_reference or event.provider_trade_id
        if not reference:
            return None
        point = self._price_table.lookup(event.provider, event.paid_amount_minor, self._epsilon)
        if point is None:
            logger.info(
                "order_synthesis_skipped",
                reason="price_point_unknown",
                provider=event.provider,
                amount_minor=event.paid_amount_minor,
            )
            return None
        async with self._uow_factory(readonly=True) as uow:
            if not await uow.account_repository.exists(decoded.user_id):
                logger.info("order_synthesis_skipped", reason="account_not_found", user_id=decoded.user_id)
                return None

        metadata: dict[str, Any] = {"packageId": event.package_id or point.package_id}
        if decoded.credits_hint is not None:
            metadata["creditsHint"] = decoded.credits_hint
        order = Order.synthesize_paid(
            provider=event.provider,
            external_reference=reference,
            provider_trade_id=event.provider_trade_id,
            user_id=decoded.user_id,
            amount_minor=event.paid_amount_minor,
            credits_requested=point.credits,
            raw_payload=event.raw_payload,
            metadata=metadata,
        )
        try:
            async with self._uow_factory() as uow:
                order = await uow.order_repository.add(order)
        except OrderAlreadyExistsException:
            # 并发投递抢先创建：重新读取后按已有订单处理
            existing = await self._get(event.provider, reference)
            if existing is None:
                raise
            return await self._resolve(existing, event, MatchMethod.EXTERNAL_REFERENCE)

        logger.info(
            "order_synthesized",
            order_id=order.id,
            provider=order.provider,
            user_id=order.user_id,
            amount_minor=order.amount_minor,
            credits=order.credits_requested,
        )
        return MatchResult(order, MatchOutcome.MATCHED, MatchMethod.USER_REFERENCE)

    # ------------------------------------------------------------------
    # 3. 金额 + 时间窗口兜底
    # ------------------------------------------------------------------
    async def _fallback_candidates(
        self, event: PaymentEvent, decoded: Optional[DecodedUserReference]
    ) -> List[Order]:
        async with self._uow_factory(readonly=True) as uow:
            return await uow.order_repository.list_fallback_candidates(
                provider=event.provider,
                amount_min=event.paid_amount_minor - self._epsilon,
                amount_max=event.paid_amount_minor + self._epsilon,
                created_after=event.received_at - self._fallback_window,
                user_id=decoded.user_id if decoded else None,
                limit=self._candidate_limit,
            )

    # ------------------------------------------------------------------
    # 4. 无法匹配
    # ------------------------------------------------------------------
    async def _record_unmatched(
        self,
        event: PaymentEvent,
        reason: FailureReason,
        *,
        user_id: Optional[str] = None,
        **metadata: Any,
    ) -> MatchResult:
        suffix = unmatched_reference_suffix(event.provider_trade_id, event.raw_payload)
        meta: dict[str, Any] = {
            "eventExternalReference": event.external_reference,
            "userReference": event.user_reference,
            "packageId": event.package_id,
            **metadata,
        }
        order = Order.unmatched(
            provider=event.provider,
            reference_suffix=suffix,
            provider_trade_id=event.provider_trade_id,
            user_id=user_id,
            amount_minor=event.paid_amount_minor,
            reason=reason,
            raw_payload=event.raw_payload,
            metadata=meta,
        )
        try:
            async with self._uow_factory() as uow:
                order = await uow.order_repository.add(order)
        except OrderAlreadyExistsException:
            existing = await self._get(event.provider, f"{UNMATCHED_PREFIX}{suffix}")
            if existing is None:
                raise
            order = existing

        logger.warning(
            "payment_unmatched",
            order_id=order.id,
            provider=event.provider,
            reason=reason.value,
            external_reference=order.external_reference,
            amount_minor=event.paid_amount_minor,
        )
        return MatchResult(order, MatchOutcome.UNMATCHED)

    # ------------------------------------------------------------------
    # 命中已有订单后的状态处理
    # ------------------------------------------------------------------
    async def _resolve(self, order: Order, event: PaymentEvent, method: MatchMethod) -> MatchResult:
        for _ in range(_MAX_RESOLVE_ROUNDS):
            if order.status in (OrderStatus.CANCELLED, OrderStatus.EXPIRED):
                return await self._record_unmatched(
                    event,
                    FailureReason.ORDER_NOT_PAYABLE,
                    user_id=order.user_id,
                    referencedOrderId=order.id,
                    referencedOrderStatus=order.status.value,
                )
            if order.status != OrderStatus.PENDING:
                if not self._same_payment(order, event):
                    # 已结算订单上的另一笔款项：单独落库，不改动原订单
                    return await self._record_unmatched(
                        event,
                        FailureReason.ORDER_NOT_PAYABLE,
                        user_id=order.user_id,
                        referencedOrderId=order.id,
                        referencedOrderStatus=order.status.value,
                        referencedTradeId=order.provider_trade_id,
                    )
                logger.info(
                    "payment_already_processed",
                    order_id=order.id,
                    status=order.status.value,
                    provider_trade_id=event.provider_trade_id,
                )
                return MatchResult(order, MatchOutcome.ALREADY_PROCESSED, method)

            if event.paid_amount_minor != order.amount_minor and method == MatchMethod.AMOUNT_TIME_FALLBACK:
                # 兜底候选只是弱关联，金额不符时不能判该订单失败
                return await self._record_unmatched(
                    event,
                    FailureReason.AMOUNT_MISMATCH,
                    user_id=order.user_id,
                    referencedOrderId=order.id,
                    expectedAmountMinor=order.amount_minor,
                )

            if event.paid_amount_minor != order.amount_minor:
                candidate = self._as_mismatch(order, event, method)
                outcome = MatchOutcome.AMOUNT_MISMATCH
            else:
                candidate = self._as_paid(order, event, method)
                outcome = MatchOutcome.MATCHED

            async with self._uow_factory() as uow:
                hit = await uow.order_repository.compare_and_set(candidate, {OrderStatus.PENDING})
            if hit:
                if outcome == MatchOutcome.AMOUNT_MISMATCH:
                    logger.warning(
                        "payment_amount_mismatch",
                        order_id=candidate.id,
                        expected_amount_minor=order.amount_minor,
                        paid_amount_minor=event.paid_amount_minor,
                    )
                else:
                    logger.info(
                        "order_paid",
                        order_id=candidate.id,
                        match_method=method.value,
                        provider_trade_id=candidate.provider_trade_id,
                    )
                return MatchResult(candidate, outcome, method)

            # 条件更新未命中：重新读取最新状态
            refreshed = await self._get_by_id(order.id)
            if refreshed is None:
                break
            order = refreshed
        return MatchResult(order, MatchOutcome.ALREADY_PROCESSED, method)

    @staticmethod
    def _same_payment(order: Order, event: PaymentEvent) -> bool:
        """没有交易号的投递无法区分，按重复处理"""
        if not event.provider_trade_id:
            return True
        return event.provider_trade_id == order.provider_trade_id

    @staticmethod
    def _copy(order: Order) -> Order:
        return Order(
            id=order.id,
            provider=order.provider,
            external_reference=order.external_reference,
            user_id=order.user_id,
            amount_minor=order.amount_minor,
            credits_requested=order.credits_requested,
            status=order.status,
            provider_trade_id=order.provider_trade_id,
            match_method=order.match_method,
            failure_reason=order.failure_reason,
            raw_provider_payload=order.raw_provider_payload,
            metadata=dict(order.metadata),
            created_at=order.created_at,
            updated_at=order.updated_at,
            paid_at=order.paid_at,
            credited_at=order.credited_at,
        )

    def _as_paid(self, order: Order, event: PaymentEvent, method: MatchMethod) -> Order:
        candidate = self._copy(order)
        candidate.mark_paid(
            provider_trade_id=event.provider_trade_id,
            raw_payload=event.raw_payload,
            match_method=method,
        )
        if event.package_id:
            candidate.metadata.setdefault("packageId", event.package_id)
        return candidate

    def _as_mismatch(self, order: Order, event: PaymentEvent, method: MatchMethod) -> Order:
        candidate = self._copy(order)
        if event.provider_trade_id:
            candidate.provider_trade_id = event.provider_trade_id
        candidate.raw_provider_payload = event.raw_payload
        candidate.match_method = method.value
        candidate.mark_failed(
            FailureReason.AMOUNT_MISMATCH,
            expectedAmountMinor=order.amount_minor,
            paidAmountMinor=event.paid_amount_minor,
            matchMethod=method.value,
        )
        return candidate

    async def _get(self, provider: str, external_reference: str) -> Optional[Order]:
        async with self._uow_factory(readonly=True) as uow:
            return await uow.order_repository.get_by_external_reference(provider, external_reference)

    async def _get_by_id(self, order_id: int) -> Optional[Order]:
        async with self._uow_factory(readonly=True) as uow:
            return await uow.order_repository.get_by_id(order_id)

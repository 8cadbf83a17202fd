"""
对账编排（application/services）- 所有渠道共用的一条处理管线

    Provider Adapter → OrderMatcher → CreditLedgerApplier
"""
from __future__ import annotations

from core.logging_config import get_logger
from domain.order.entity import Order
from domain.order.events import PaymentEvent
from domain.order.service import AlreadyProcessed, AmountMismatchError, UnmatchedEventError
from application.services.credit_ledger import CreditLedgerApplier
from application.services.order_matcher import MatchOutcome, OrderMatcher


logger = get_logger(__name__)


class ReconciliationService:
    def __init__(self, matcher: OrderMatcher, applier: CreditLedgerApplier) -> None:
        self._matcher = matcher
        self._applier = applier

    async def handle_event(self, event: PaymentEvent) -> Order:
        """
        处理一条已验签的到账通知，返回入账后的订单

        Raises:
            AmountMismatchError: 金额不符，订单已置为 failed
            UnmatchedEventError: 无法匹配，UNMATCHED_ 记录已落库
            AlreadyProcessed: 重复投递或并发竞争的失败方，无任何副作用
            TransientStoreFailure: 存储瞬时故障，渠道应重试
        """
        logger.info(
            "payment_event_received",
            provider=event.provider,
            external_reference=event.external_reference,
            provider_trade_id=event.provider_trade_id,
            amount_minor=event.paid_amount_minor,
        )
        result = await self._matcher.match(event)
        if result.outcome == MatchOutcome.AMOUNT_MISMATCH:
            raise AmountMismatchError(result.order, event.paid_amount_minor)
        if result.outcome == MatchOutcome.UNMATCHED:
            raise UnmatchedEventError(result.order)

        order = result.order
        if not order.is_creditable():
            raise AlreadyProcessed(order)

        applied = await self._applier.apply(order.id)
        if not applied.applied:
            raise AlreadyProcessed(applied.order or order)
        return applied.order

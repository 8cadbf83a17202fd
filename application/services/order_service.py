"""
订单应用服务（application/services）- 下单、状态查询、用户订单列表
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from core.logging_config import get_logger
from domain.common.exceptions import OrderNotFoundException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import Order
from domain.order.service import (
    PricePointUnknownException,
    PriceTable,
    generate_external_reference,
)
from application.dtos.payments import (
    CreateOrderRequest,
    CreatedOrderDTO,
    OrderDTO,
    OrderStatusDTO,
    UserOrdersDTO,
    normalize_provider,
)


logger = get_logger(__name__)

MAX_USER_ORDERS = 20


class OrderApplicationService:
    """订单应用服务"""

    def __init__(self, uow_factory: Callable[..., AbstractUnitOfWork], price_table: PriceTable):
        self._uow_factory = uow_factory
        self._price_table = price_table

    async def create_order(self, req: CreateOrderRequest) -> CreatedOrderDTO:
        """
        创建购买意图

        积分数只取自价格档位表，客户端无法指定；同用户同渠道同金额的旧 pending 订单被取消。
        """
        point = self._price_table.lookup(req.provider, req.amount_minor)
        if point is None:
            raise PricePointUnknownException(req.provider, req.amount_minor)

        async with self._uow_factory() as uow:
            await uow.account_repository.ensure(req.user_id)

        async with self._uow_factory() as uow:
            cancelled = await uow.order_repository.cancel_superseded(req.user_id, req.provider, req.amount_minor)
            order = Order.new_pending(
                provider=req.provider,
                external_reference=generate_external_reference(req.provider, req.user_id, point.credits),
                user_id=req.user_id,
                amount_minor=req.amount_minor,
                credits_requested=point.credits,
                metadata={"packageId": point.package_id},
            )
            order = await uow.order_repository.add(order)

        logger.info(
            "order_intent_created",
            order_id=order.id,
            provider=order.provider,
            user_id=order.user_id,
            amount_minor=order.amount_minor,
            credits=order.credits_requested,
            cancelled_previous=cancelled,
        )
        return CreatedOrderDTO(
            **OrderDTO.from_entity(order).model_dump(),
            cancelled_previous=cancelled,
            package_id=point.package_id,
        )

    async def get_order_status(self, external_reference: str, provider: str) -> OrderStatusDTO:
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.order_repository.get_by_external_reference(
                normalize_provider(provider), external_reference
            )
        if order is None:
            raise OrderNotFoundException(external_reference)
        return OrderStatusDTO.from_entity(order)

    async def list_user_orders(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        limit: int = MAX_USER_ORDERS,
    ) -> UserOrdersDTO:
        limit = max(1, min(limit, MAX_USER_ORDERS))
        if since is not None and since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        async with self._uow_factory(readonly=True) as uow:
            orders = await uow.order_repository.list_by_user(user_id, created_after=since, limit=limit)

        status_count: dict[str, int] = {}
        for order in orders:
            status_count[order.status.value] = status_count.get(order.status.value, 0) + 1
        return UserOrdersDTO(
            user_id=user_id,
            total=len(orders),
            status_count=status_count,
            orders=[OrderDTO.from_entity(o) for o in orders],
        )

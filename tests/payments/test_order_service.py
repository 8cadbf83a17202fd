import re

import pytest

from application.dtos.payments import CreateOrderRequest
from domain.common.exceptions import OrderNotFoundException
from domain.order.entity import OrderStatus
from domain.order.service import PricePointUnknownException
from infrastructure.composition import build_order_service


@pytest.fixture
def service(uow_factory, payment_cfg):
    return build_order_service(uow_factory, payment_cfg)


@pytest.mark.asyncio
async def test_create_order_derives_credits_from_price_table(service, balance_of):
    created = await service.create_order(CreateOrderRequest(user_id="user_1", provider="alipay", amount_minor=4990))

    assert created.status == OrderStatus.PENDING.value
    assert created.credits_requested == 350
    assert created.package_id == "pro"
    assert created.external_reference.startswith("AL")
    assert created.cancelled_previous == 0
    assert await balance_of("user_1") == 0


@pytest.mark.asyncio
async def test_afdian_reference_carries_user_identity(service):
    created = await service.create_order(CreateOrderRequest(user_id="user_1", provider="afdian", amount_minor=1990))
    assert re.match(r"^user_1\|120\|\d{13}\|[a-z0-9]{11}$", created.external_reference)


@pytest.mark.asyncio
async def test_new_intent_supersedes_pending_one(service, load_order):
    first = await service.create_order(CreateOrderRequest(user_id="user_1", provider="paddle", amount_minor=1990))
    second = await service.create_order(CreateOrderRequest(user_id="user_1", provider="paddle", amount_minor=1990))

    assert second.cancelled_previous == 1
    assert (await load_order(first.id)).status == OrderStatus.CANCELLED
    assert (await load_order(second.id)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_unknown_price_point_is_rejected(service):
    with pytest.raises(PricePointUnknownException):
        await service.create_order(CreateOrderRequest(user_id="user_1", provider="alipay", amount_minor=1234))


def test_request_rejects_unsupported_provider():
    with pytest.raises(ValueError):
        CreateOrderRequest(user_id="user_1", provider="stripe", amount_minor=4990)
    assert CreateOrderRequest(user_id="user_1", provider="Lemon", amount_minor=4990).provider == "lemonsqueezy"


@pytest.mark.asyncio
async def test_order_status_lookup(service):
    created = await service.create_order(CreateOrderRequest(user_id="user_1", provider="alipay", amount_minor=9990))
    status = await service.get_order_status(created.external_reference, "ali")

    assert status.is_pending is True
    assert status.is_paid is False
    assert status.client_status == "pending"
    assert status.credits == 800

    with pytest.raises(OrderNotFoundException):
        await service.get_order_status("AL-missing", "alipay")


@pytest.mark.asyncio
async def test_list_user_orders_counts_statuses(service, seed_order):
    await seed_order(user_id="user_5", status=OrderStatus.CREDITED)
    await seed_order(user_id="user_5", status=OrderStatus.FAILED)
    await seed_order(user_id="user_5")
    await seed_order(user_id="someone_else")

    result = await service.list_user_orders("user_5", limit=100)

    assert result.total == 3
    assert result.status_count == {"credited": 1, "failed": 1, "pending": 1}
    assert {o.user_id for o in result.orders} == {"user_5"}

from datetime import datetime, timedelta, timezone

import pytest

from domain.order.entity import OrderStatus
from infrastructure.composition import build_recovery_service


@pytest.fixture
def recovery(uow_factory, payment_cfg):
    return build_recovery_service(uow_factory, payment_cfg)


@pytest.mark.asyncio
async def test_retry_credits_parked_and_stranded_orders(recovery, seed_order, balance_of, load_order):
    now = datetime.now(timezone.utc)
    parked = await seed_order(user_id="frank", status=OrderStatus.PENDING_CREDITS)
    stranded = await seed_order(user_id="frank", amount_minor=1990, credits=120,
                                status=OrderStatus.PAID, updated_at=now - timedelta(minutes=10))
    fresh = await seed_order(user_id="frank", amount_minor=9990, credits=800, status=OrderStatus.PAID)

    summary = await recovery.retry_pending_credits(now=now)

    assert summary.checked == 2
    assert summary.credited == 2
    assert summary.failed == 0
    assert (await load_order(parked.id)).status == OrderStatus.CREDITED
    assert (await load_order(stranded.id)).status == OrderStatus.CREDITED
    # 宽限期内的 paid 订单留给正在处理它的请求
    assert (await load_order(fresh.id)).status == OrderStatus.PAID
    assert await balance_of("frank") == 470


@pytest.mark.asyncio
async def test_retry_is_safe_to_repeat(recovery, seed_order, balance_of):
    await seed_order(user_id="gina", status=OrderStatus.PENDING_CREDITS)

    first = await recovery.retry_pending_credits()
    second = await recovery.retry_pending_credits()

    assert first.credited == 1
    assert second.checked == 0
    assert await balance_of("gina") == 350


@pytest.mark.asyncio
async def test_expiry_only_touches_old_pending_orders(recovery, seed_order, load_order):
    now = datetime.now(timezone.utc)
    old = now - timedelta(hours=25)
    stale = await seed_order(created_at=old)
    recent = await seed_order(user_id="user_2")
    old_paid = await seed_order(user_id="user_3", status=OrderStatus.PAID, created_at=old)
    old_credited = await seed_order(user_id="user_4", status=OrderStatus.CREDITED, created_at=old)

    summary = await recovery.expire_stale_orders(now=now)

    assert summary.expired == 1
    assert (await load_order(stale.id)).status == OrderStatus.EXPIRED
    assert (await load_order(recent.id)).status == OrderStatus.PENDING
    assert (await load_order(old_paid.id)).status == OrderStatus.PAID
    assert (await load_order(old_credited.id)).status == OrderStatus.CREDITED

    again = await recovery.expire_stale_orders(now=now)
    assert again.expired == 0

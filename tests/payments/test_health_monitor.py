from datetime import datetime, timedelta, timezone

import pytest

from domain.order.entity import MatchMethod, OrderStatus
from infrastructure.composition import build_health_monitor


@pytest.fixture
def monitor(uow_factory, payment_cfg):
    return build_health_monitor(uow_factory, payment_cfg)


@pytest.mark.asyncio
async def test_empty_store_is_healthy(monitor):
    report = await monitor.health_report()

    assert report.status == "healthy"
    assert report.success_rate is None
    assert report.alerts == []


@pytest.mark.asyncio
async def test_backlog_of_pending_credits_is_critical(monitor, seed_order):
    for i in range(6):
        await seed_order(user_id=f"user_{i}", status=OrderStatus.PENDING_CREDITS)

    report = await monitor.health_report()

    assert report.status == "warning"
    assert report.pending_credits == 6
    alert = next(a for a in report.alerts if a.metric == "pending_credits")
    assert alert.level == "critical"


@pytest.mark.asyncio
async def test_low_success_rate_needs_enough_samples(monitor, seed_order):
    for i in range(5):
        await seed_order(user_id=f"ok_{i}", status=OrderStatus.CREDITED)
    for i in range(5):
        await seed_order(user_id=f"bad_{i}", status=OrderStatus.FAILED)

    report = await monitor.health_report()
    assert report.recent_terminal == 10
    assert report.success_rate == 0.5
    assert not [a for a in report.alerts if a.metric == "success_rate"]

    await seed_order(user_id="bad_x", status=OrderStatus.EXPIRED)
    report = await monitor.health_report()
    assert report.recent_terminal == 11
    assert [a for a in report.alerts if a.metric == "success_rate"]


@pytest.mark.asyncio
async def test_stale_pending_orders_raise_warning(monitor, seed_order):
    old = datetime.now(timezone.utc) - timedelta(hours=2)
    for i in range(11):
        await seed_order(user_id=f"user_{i}", created_at=old)

    report = await monitor.health_report()

    assert report.stale_pending == 11
    alert = next(a for a in report.alerts if a.metric == "stale_pending")
    assert alert.level == "warning"


@pytest.mark.asyncio
async def test_reconciliation_report_lists_items_for_review(monitor, seed_order):
    now = datetime.now(timezone.utc)
    await seed_order(user_id="user_a")
    await seed_order(user_id="user_b")
    stale = await seed_order(user_id="user_c", amount_minor=1990, credits=120, created_at=now - timedelta(hours=1))
    fallback = await seed_order(user_id="user_d", status=OrderStatus.CREDITED,
                                match_method=MatchMethod.AMOUNT_TIME_FALLBACK.value)

    report = await monitor.reconciliation_report(now=now)

    groups = {(g.provider, g.amount_minor): g.count for g in report.duplicate_amount_groups}
    assert groups == {("alipay", 4990): 2}
    assert [o.id for o in report.fallback_orders] == [fallback.id]
    assert [o.id for o in report.stale_pending_orders] == [stale.id]
    assert report.unmatched_orders == []

import asyncio

import pytest

from core.config import settings
from infrastructure.database import build_engine, create_tables
from infrastructure.tasks import celery_app
from infrastructure.tasks.config.beat import CELERY_BEAT_SCHEDULE
from infrastructure.tasks.tasks.reconciliation import (
    expire_stale_orders,
    payment_health_check,
    retry_pending_credits,
)


@pytest.fixture
def task_database(tmp_path, monkeypatch):
    url = f"sqlite+aiosqlite:///{tmp_path / 'tasks.db'}"

    async def _prepare():
        engine = build_engine(url)
        await create_tables(engine)
        await engine.dispose()

    asyncio.run(_prepare())
    monkeypatch.setattr(settings.database, "url", url)
    return url


def test_beat_schedule_covers_recovery_jobs():
    tasks = {entry["task"] for entry in CELERY_BEAT_SCHEDULE.values()}
    assert tasks == {"payments.retry_pending_credits", "payments.expire_stale_orders", "payments.health_check"}
    assert celery_app.conf.task_always_eager is True


def test_recovery_tasks_run_eagerly(task_database):
    retry = retry_pending_credits.apply().get()
    assert retry == {"checked": 0, "credited": 0, "already_processed": 0, "failed": 0}

    expired = expire_stale_orders.apply().get()
    assert expired["expired"] == 0

    health = payment_health_check.apply().get()
    assert health["status"] == "healthy"

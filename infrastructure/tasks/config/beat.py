"""Celery beat schedule configuration.

Keeping the structure close to the Celery docs makes copying snippets
straightforward for new periodic jobs.
"""
from __future__ import annotations

from celery.schedules import crontab

CELERY_BEAT_SCHEDULE = {
    # 每小时重试未确认的入账
    "payments-retry-pending-credits": {
        "task": "payments.retry_pending_credits",
        "schedule": crontab(minute=0),
    },
    # 每天过期超时未支付的订单
    "payments-expire-stale-orders": {
        "task": "payments.expire_stale_orders",
        "schedule": crontab(minute=0, hour=3),
    },
    "payments-health-check": {
        "task": "payments.health_check",
        "schedule": crontab(minute="*/15"),
    },
}

"""Payment recovery Celery tasks: credit retries, order expiry and health checks."""
from __future__ import annotations

from celery import shared_task

from ..utils.base_task import BaseTask
from core.logging_config import get_logger
from domain.common.exceptions import TransientStoreFailure
from infrastructure.composition import (
    build_health_monitor,
    build_recovery_service,
)

logger = get_logger(__name__)


@shared_task(
    name="payments.retry_pending_credits",
    bind=True,
    base=BaseTask,
    autoretry_for=(TransientStoreFailure,),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    retry_kwargs={"max_retries": 3},
)
def retry_pending_credits(self) -> dict:
    """Re-apply credits for pending_credits orders and stranded paid orders."""
    async def _run(uow_factory):
        return await build_recovery_service(uow_factory).retry_pending_credits()

    summary = self.run_async(_run)
    return summary.model_dump()


@shared_task(
    name="payments.expire_stale_orders",
    bind=True,
    base=BaseTask,
    autoretry_for=(TransientStoreFailure,),
    retry_backoff=True,
    retry_kwargs={"max_retries": 3},
)
def expire_stale_orders(self) -> dict:
    async def _run(uow_factory):
        return await build_recovery_service(uow_factory).expire_stale_orders()

    summary = self.run_async(_run)
    return summary.model_dump(mode="json")


@shared_task(name="payments.health_check", bind=True, base=BaseTask)
def payment_health_check(self) -> dict:
    async def _run(uow_factory):
        return await build_health_monitor(uow_factory).health_report()

    report = self.run_async(_run)
    if report.alerts:
        logger.warning("payment_health_check_alerts", status=report.status, alerts=[a.message for a in report.alerts])
    return report.model_dump(mode="json")

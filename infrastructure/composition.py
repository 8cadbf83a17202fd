"""
组合根 - 按配置装配应用服务（API 依赖与 Celery 任务共用）
"""
from __future__ import annotations

from typing import Callable, Optional

from core.settings import PaymentSettings, payment_settings
from domain.common.unit_of_work import AbstractUnitOfWork
from application.services.credit_ledger import CreditLedgerApplier
from application.services.health_service import HealthMonitor
from application.services.order_matcher import OrderMatcher
from application.services.order_service import OrderApplicationService
from application.services.reconciliation_service import ReconciliationService
from application.services.recovery_service import RecoveryService
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork

UowFactory = Callable[..., AbstractUnitOfWork]


def build_applier(uow_factory: UowFactory = SQLAlchemyUnitOfWork, settings: Optional[PaymentSettings] = None) -> CreditLedgerApplier:
    cfg = settings or payment_settings
    return CreditLedgerApplier(
        uow_factory,
        retry_attempts=cfg.recovery.store_retry_attempts,
        retry_backoff=cfg.recovery.store_retry_backoff,
    )


def build_reconciliation_service(
    uow_factory: UowFactory = SQLAlchemyUnitOfWork, settings: Optional[PaymentSettings] = None
) -> ReconciliationService:
    cfg = settings or payment_settings
    matcher = OrderMatcher(
        uow_factory,
        cfg.price_table(),
        epsilon_minor=cfg.matching.epsilon_minor,
        fallback_window_minutes=cfg.matching.fallback_window_minutes,
        fallback_candidate_limit=cfg.matching.fallback_candidate_limit,
    )
    return ReconciliationService(matcher, build_applier(uow_factory, cfg))


def build_recovery_service(
    uow_factory: UowFactory = SQLAlchemyUnitOfWork, settings: Optional[PaymentSettings] = None
) -> RecoveryService:
    cfg = settings or payment_settings
    return RecoveryService(
        uow_factory,
        build_applier(uow_factory, cfg),
        batch_size=cfg.recovery.batch_size,
        paid_grace_seconds=cfg.recovery.paid_grace_seconds,
        pending_expiry_hours=cfg.recovery.pending_expiry_hours,
    )


def build_health_monitor(
    uow_factory: UowFactory = SQLAlchemyUnitOfWork, settings: Optional[PaymentSettings] = None
) -> HealthMonitor:
    cfg = settings or payment_settings
    h = cfg.health
    return HealthMonitor(
        uow_factory,
        window_hours=h.window_hours,
        stale_pending_minutes=h.stale_pending_minutes,
        stale_pending_threshold=h.stale_pending_threshold,
        pending_credits_threshold=h.pending_credits_threshold,
        min_success_rate=h.min_success_rate,
        min_terminal_orders=h.min_terminal_orders,
        reconciliation_pending_minutes=h.reconciliation_pending_minutes,
    )


def build_order_service(
    uow_factory: UowFactory = SQLAlchemyUnitOfWork, settings: Optional[PaymentSettings] = None
) -> OrderApplicationService:
    cfg = settings or payment_settings
    return OrderApplicationService(uow_factory, cfg.price_table())

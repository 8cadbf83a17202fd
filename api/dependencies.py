"""
API依赖项 - 服务装配、调度密钥校验、回调来源限制
"""
import hmac
import ipaddress
from typing import Callable, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from core.exceptions import UnauthorizedException, ServiceNotConfiguredException
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from domain.common.unit_of_work import AbstractUnitOfWork
from application.services.health_service import HealthMonitor
from application.services.order_service import OrderApplicationService
from application.services.reconciliation_service import ReconciliationService
from application.services.recovery_service import RecoveryService
from infrastructure.composition import (
    build_health_monitor,
    build_order_service,
    build_reconciliation_service,
    build_recovery_service,
)
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


logger = get_logger(__name__)

# 调度器 / 运维接口使用 Authorization: Bearer <cron_secret>
http_bearer = HTTPBearer(
    scheme_name="CronSecret",
    description="Shared secret for scheduler and monitoring endpoints",
    auto_error=False,
)


def get_uow_factory() -> Callable[..., AbstractUnitOfWork]:
    return SQLAlchemyUnitOfWork


def get_payment_settings() -> PaymentSettings:
    return payment_settings


async def get_reconciliation_service(
    uow_factory: Callable[..., AbstractUnitOfWork] = Depends(get_uow_factory),
    cfg: PaymentSettings = Depends(get_payment_settings),
) -> ReconciliationService:
    return build_reconciliation_service(uow_factory, cfg)


async def get_recovery_service(
    uow_factory: Callable[..., AbstractUnitOfWork] = Depends(get_uow_factory),
    cfg: PaymentSettings = Depends(get_payment_settings),
) -> RecoveryService:
    return build_recovery_service(uow_factory, cfg)


async def get_health_monitor(
    uow_factory: Callable[..., AbstractUnitOfWork] = Depends(get_uow_factory),
    cfg: PaymentSettings = Depends(get_payment_settings),
) -> HealthMonitor:
    return build_health_monitor(uow_factory, cfg)


async def get_order_service(
    uow_factory: Callable[..., AbstractUnitOfWork] = Depends(get_uow_factory),
    cfg: PaymentSettings = Depends(get_payment_settings),
) -> OrderApplicationService:
    return build_order_service(uow_factory, cfg)


async def require_cron_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
    cfg: PaymentSettings = Depends(get_payment_settings),
) -> None:
    """常量时间比较共享密钥；未配置密钥时拒绝服务（503）"""
    secret = cfg.scheduler.cron_secret
    if not secret:
        raise ServiceNotConfiguredException("PAYMENT__SCHEDULER__CRON_SECRET")
    provided = credentials.credentials if credentials else ""
    if not provided or not hmac.compare_digest(secret.encode("utf-8"), provided.encode("utf-8")):
        logger.warning("scheduler_unauthorized")
        raise UnauthorizedException("Invalid scheduler secret")


def _ip_permitted(remote_ip: str, allowlist: list[str]) -> bool:
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning("webhook_allowlist_entry_invalid", entry=entry)
    return False


def webhook_source_permitted(request: Request, cfg: PaymentSettings) -> bool:
    """可选的回调来源 IP 白名单（直连地址，不信任转发头）；未配置时放行"""
    allowlist = cfg.webhook.ip_allowlist or []
    if not allowlist:
        return True
    remote_ip = request.client.host if request.client else ""
    if not _ip_permitted(remote_ip, allowlist):
        logger.warning("webhook_ip_not_allowed", remote_ip=remote_ip)
        return False
    return True

"""
Payments API routes.

Provider webhooks, purchase intents, order status lookups, scheduler
triggers and monitoring. Keep this thin: parsing lives in the adapters,
decisions live in the application services.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from api.dependencies import (
    get_health_monitor,
    get_order_service,
    get_payment_settings,
    get_reconciliation_service,
    get_recovery_service,
    require_cron_secret,
    webhook_source_permitted,
)
from application.dtos.payments import SUPPORTED_PROVIDERS, CreateOrderRequest, WebhookAck
from application.services.health_service import HealthMonitor
from application.services.order_service import MAX_USER_ORDERS, OrderApplicationService
from application.services.reconciliation_service import ReconciliationService
from application.services.recovery_service import RecoveryService
from core.logging_config import get_logger
from core.response import success_response
from core.settings import PaymentSettings
from domain.common.exceptions import DomainValidationException, TransientStoreFailure
from domain.order.service import AlreadyProcessed, AmountMismatchError, UnmatchedEventError
from infrastructure.external.payments import get_payment_gateway
from infrastructure.external.payments.exceptions import PaymentProviderError, PaymentSignatureError


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)


def _render(ack: WebhookAck) -> Response:
    if ack.media_type == "text/plain":
        return PlainTextResponse(str(ack.body), status_code=ack.status_code)
    return JSONResponse(ack.body, status_code=ack.status_code)


async def handle_webhook(
    provider: str,
    request: Request,
    service: ReconciliationService,
    cfg: PaymentSettings,
) -> Response:
    """验签 → 匹配 → 入账，并翻译为渠道原生回执

    已持久化的结果（重复、金额不符、无法匹配）一律回成功，避免渠道无意义重试；
    验签失败不落库；存储瞬时故障回 500 让渠道重试。
    """
    gateway = get_payment_gateway(provider, cfg)
    if not webhook_source_permitted(request, cfg):
        return _render(gateway.failure_response(403, "source not allowed"))
    raw_body = await request.body()
    try:
        event = gateway.parse_webhook(request.headers, raw_body)
        if event is not None:
            order = await service.handle_event(event)
            logger.info("payment_webhook_credited", provider=provider, order_id=order.id)
        ack = gateway.success_response()
    except (AlreadyProcessed, AmountMismatchError, UnmatchedEventError) as exc:
        logger.info("payment_webhook_acknowledged", provider=provider, outcome=exc.error_type, details=exc.details)
        ack = gateway.success_response()
    except PaymentSignatureError as exc:
        logger.warning("payment_webhook_rejected", provider=provider, reason=exc.message)
        ack = gateway.failure_response(401, "signature verification failed")
    except (PaymentProviderError, DomainValidationException) as exc:
        logger.warning("payment_webhook_malformed", provider=provider, reason=exc.message)
        ack = gateway.failure_response(400, "malformed notification")
    except TransientStoreFailure as exc:
        logger.error("payment_webhook_transient_failure", provider=provider, details=exc.details)
        ack = gateway.failure_response(500, "temporary failure")
    except Exception:
        logger.exception("payment_webhook_unhandled", provider=provider)
        ack = gateway.failure_response(500, "internal error")
    return _render(ack)


def _webhook_endpoint(provider: str):
    async def endpoint(
        request: Request,
        service: ReconciliationService = Depends(get_reconciliation_service),
        cfg: PaymentSettings = Depends(get_payment_settings),
    ) -> Response:
        return await handle_webhook(provider, request, service, cfg)

    endpoint.__name__ = f"{provider}_webhook"
    return endpoint


for _provider in SUPPORTED_PROVIDERS:
    router.add_api_route(
        f"/webhooks/{_provider}",
        _webhook_endpoint(_provider),
        methods=["POST"],
        summary=f"{_provider} payment notification",
        include_in_schema=True,
    )


@router.post("/orders", summary="Create purchase intent", status_code=201)
async def create_order(
    payload: CreateOrderRequest,
    service: OrderApplicationService = Depends(get_order_service),
):
    order = await service.create_order(payload)
    return success_response(data=order.model_dump(mode="json"), message="Order created")


@router.get("/orders/{external_reference}", summary="Order status")
async def get_order_status(
    external_reference: str,
    provider: str = Query(..., description="alipay / afdian / paddle / lemonsqueezy"),
    service: OrderApplicationService = Depends(get_order_service),
):
    status = await service.get_order_status(external_reference, provider)
    return success_response(data=status.model_dump(mode="json"))


@router.get("/users/{user_id}/orders", summary="Recent orders of a user")
async def list_user_orders(
    user_id: str,
    since: Optional[datetime] = Query(default=None),
    limit: int = Query(default=MAX_USER_ORDERS, ge=1, le=MAX_USER_ORDERS),
    service: OrderApplicationService = Depends(get_order_service),
):
    result = await service.list_user_orders(user_id, since=since, limit=limit)
    return success_response(data=result.model_dump(mode="json"))


@router.api_route(
    "/scheduler/retry-credits",
    methods=["GET", "POST"],
    summary="Retry unconfirmed credits",
    dependencies=[Depends(require_cron_secret)],
)
async def trigger_retry_credits(service: RecoveryService = Depends(get_recovery_service)):
    summary = await service.retry_pending_credits()
    return success_response(data=summary.model_dump(mode="json"))


@router.api_route(
    "/scheduler/expire-orders",
    methods=["GET", "POST"],
    summary="Expire stale pending orders",
    dependencies=[Depends(require_cron_secret)],
)
async def trigger_expire_orders(service: RecoveryService = Depends(get_recovery_service)):
    summary = await service.expire_stale_orders()
    return success_response(data=summary.model_dump(mode="json"))


@router.get("/health", summary="Payment pipeline health", dependencies=[Depends(require_cron_secret)])
async def payment_health(monitor: HealthMonitor = Depends(get_health_monitor)):
    report = await monitor.health_report()
    return success_response(data=report.model_dump(mode="json"))


@router.get("/reconciliation", summary="Manual reconciliation report", dependencies=[Depends(require_cron_secret)])
async def reconciliation_report(monitor: HealthMonitor = Depends(get_health_monitor)):
    report = await monitor.reconciliation_report()
    return success_response(data=report.model_dump(mode="json"))

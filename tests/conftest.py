"""Pytest bootstrap configuration.

Ensure environment variables are set before test collection and module
imports that depend on application settings.
"""
import os
import tempfile

# 应用级引擎指向临时 SQLite，避免测试连到真实数据库
_DB_DIR = tempfile.mkdtemp(prefix="credit-ledger-tests-")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE__URL", f"sqlite+aiosqlite:///{_DB_DIR}/app.db")

import base64
import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Optional

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.settings import (
    AfdianSettings,
    AlipaySettings,
    LemonSqueezySettings,
    PaddleSettings,
    PaymentSettings,
    RecoverySettings,
    SchedulerSettings,
)
from domain.order.entity import Order, OrderStatus
from domain.order.service import generate_external_reference
from infrastructure.database import build_engine, create_tables
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


@dataclass(frozen=True)
class RsaKeys:
    private_key: rsa.RSAPrivateKey
    public_pem: str

    def sign(self, message: str) -> str:
        signature = self.private_key.sign(message.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
        return base64.b64encode(signature).decode("ascii")


@pytest.fixture(scope="session")
def rsa_keys() -> RsaKeys:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return RsaKeys(private_key=private_key, public_pem=public_pem)


@pytest.fixture
def hmac_hex():
    def _sign(secret: str, message: bytes) -> str:
        return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return _sign


@pytest.fixture
def payment_cfg(rsa_keys) -> PaymentSettings:
    return PaymentSettings(
        alipay=AlipaySettings(app_id="2021000000000001", alipay_public_key=rsa_keys.public_pem),
        afdian=AfdianSettings(webhook_token="afd-token", public_key=rsa_keys.public_pem),
        paddle=PaddleSettings(webhook_secret="pdl_ntfset_secret"),
        lemonsqueezy=LemonSqueezySettings(webhook_secret="lemon-secret"),
        scheduler=SchedulerSettings(cron_secret="cron-secret"),
        recovery=RecoverySettings(store_retry_attempts=3, store_retry_backoff=0),
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def uow_factory(engine):
    session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)
    return partial(SQLAlchemyUnitOfWork, session_factory)


@pytest.fixture
def seed_order(uow_factory):
    """直接落库一条订单（可指定状态与时间戳），账户一并创建"""

    async def _seed(
        *,
        provider: str = "alipay",
        user_id: str = "user_1",
        amount_minor: int = 4990,
        credits: int = 350,
        status: OrderStatus = OrderStatus.PENDING,
        external_reference: Optional[str] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        match_method: Optional[str] = None,
    ) -> Order:
        order = Order.new_pending(
            provider=provider,
            external_reference=external_reference or generate_external_reference(provider, user_id, credits),
            user_id=user_id,
            amount_minor=amount_minor,
            credits_requested=credits,
        )
        order.status = status
        order.match_method = match_method
        if status in (OrderStatus.PAID, OrderStatus.PENDING_CREDITS, OrderStatus.CREDITED):
            order.paid_at = datetime.now(timezone.utc)
        if created_at is not None:
            order.created_at = created_at
        if updated_at is not None:
            order.updated_at = updated_at
        async with uow_factory() as uow:
            await uow.account_repository.ensure(user_id)
        async with uow_factory() as uow:
            return await uow.order_repository.add(order)

    return _seed


@pytest.fixture
def ensure_account(uow_factory):
    async def _ensure(user_id: str) -> None:
        async with uow_factory() as uow:
            await uow.account_repository.ensure(user_id)
    return _ensure


@pytest.fixture
def balance_of(uow_factory):
    async def _balance(user_id: str) -> Optional[int]:
        async with uow_factory(readonly=True) as uow:
            return await uow.account_repository.get_balance(user_id)
    return _balance


@pytest.fixture
def load_order(uow_factory):
    async def _load(order_id: int) -> Optional[Order]:
        async with uow_factory(readonly=True) as uow:
            return await uow.order_repository.get_by_id(order_id)
    return _load

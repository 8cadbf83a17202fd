"""SQLAlchemy Unit of Work 实现"""
from __future__ import annotations

from typing import Optional, Callable
import inspect

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from domain.common.exceptions import TransientStoreFailure
from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.database import AsyncSessionLocal
from infrastructure.repositories.order_repository import (
    SQLAlchemyOrderRepository,
    SQLAlchemyCreditAccountRepository,
)

# 连接中断、锁等待超时、序列化冲突等可重试错误
TRANSIENT_ERRORS = (OperationalError, InterfaceError)


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):
    """基于SQLAlchemy的Unit of Work

    驱动层的瞬时错误在事务边界统一转换为 TransientStoreFailure，
    应用层无需感知 SQLAlchemy。
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        session: Optional[AsyncSession] = None,
        *,
        readonly: bool = False,
    ) -> None:
        super().__init__(readonly=readonly)
        self._session_factory = session_factory
        self._external_session = session
        self.session: Optional[AsyncSession] = session
        self.order_repository = None
        self.account_repository = None

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        if self.session is None:
            self.session = self._session_factory()
        self.order_repository = SQLAlchemyOrderRepository(self.session)
        self.account_repository = SQLAlchemyCreditAccountRepository(self.session)
        # 仅在非只读模式下显式开启事务
        if not self._readonly:
            try:
                self._transaction = await self.session.begin()
            except TRANSIENT_ERRORS as exc:
                await self._close_session()
                raise TransientStoreFailure("begin", error=str(exc)) from exc
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            # 事务在 commit/rollback 后通常会结束，这里仅在仍然活动时做安全关闭
            tx = getattr(self, "_transaction", None)
            if tx is not None and getattr(tx, "is_active", False):
                close = getattr(tx, "close", None)
                if callable(close):
                    res = close()
                    if inspect.isawaitable(res):
                        await res
            await self._close_session()
        if isinstance(exc, TRANSIENT_ERRORS):
            raise TransientStoreFailure("transaction", error=str(exc)) from exc

    async def _close_session(self) -> None:
        if self._external_session is None and self.session is not None:
            await self.session.close()
            self.session = None
        self.order_repository = None
        self.account_repository = None

    async def commit(self) -> None:
        if self._readonly:
            # 只读情况下不提交
            self._committed = True
            return
        if self.session and self.session.in_transaction():
            try:
                await self.session.commit()
            except TRANSIENT_ERRORS as exc:
                raise TransientStoreFailure("commit", error=str(exc)) from exc
        self._committed = True

    async def rollback(self) -> None:
        if self.session and self.session.in_transaction():
            try:
                await self.session.rollback()
            except TRANSIENT_ERRORS as exc:
                raise TransientStoreFailure("rollback", error=str(exc)) from exc
        self._committed = False

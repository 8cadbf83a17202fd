"""Common base task for Celery jobs"""
from __future__ import annotations

import asyncio
from functools import partial
from typing import Any, Awaitable, Callable, TypeVar

from celery import Task
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from core.logging_config import get_logger
from infrastructure.database import build_engine
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork

logger = get_logger(__name__)

T = TypeVar("T")


class BaseTask(Task):
    """Provides unified success/failure logging and an isolated event loop runner."""

    def run_async(self, fn: Callable[[Callable[..., SQLAlchemyUnitOfWork]], Awaitable[T]]) -> T:
        """Run ``fn(uow_factory)`` under ``asyncio.run`` with an engine owned by this call.

        Async engines pool connections per event loop, so each task invocation
        builds and disposes its own engine instead of reusing the API's.
        """
        async def _runner() -> T:
            engine = build_engine(settings.database.url, echo=settings.database.echo)
            session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)
            try:
                return await fn(partial(SQLAlchemyUnitOfWork, session_factory))
            finally:
                await engine.dispose()

        return asyncio.run(_runner())

    def on_failure(self, exc, task_id, args, kwargs, einfo):  # type: ignore[override]
        """Emit a structured error message before the default Celery handling."""
        logger.error(
            "celery_task_failure",
            task_id=task_id,
            task_name=self.name,
            args=args,
            kwargs=kwargs,
            exc=str(exc),
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_success(self, retval: Any, task_id, args, kwargs):  # type: ignore[override]
        """Log a success event so operators can trace normal execution."""
        logger.info(
            "celery_task_success",
            task_id=task_id,
            task_name=self.name,
            result=retval,
        )
        super().on_success(retval, task_id, args, kwargs)

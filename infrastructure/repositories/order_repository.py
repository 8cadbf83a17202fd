"""
订单与积分账户仓储实现 - 使用SQLAlchemy实现数据访问

所有状态写入都是单语句条件更新（UPDATE ... WHERE status IN (...)），
这是多进程/多副本之间唯一的同步手段。
"""
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from domain.order.entity import Order, OrderStatus, UNMATCHED_PREFIX
from domain.order.repository import OrderRepository, CreditAccountRepository
from domain.order.service import OrderAlreadyExistsException
from infrastructure.models.order import OrderModel, CreditAccountModel
from core.logging_config import get_logger


logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SQLAlchemyOrderRepository(OrderRepository):
    """订单仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: OrderModel) -> Order:
        """将数据库模型转换为领域实体"""
        return Order(
            id=model.id,
            provider=model.provider,
            external_reference=model.external_reference,
            user_id=model.user_id,
            amount_minor=int(model.amount_minor),
            credits_requested=int(model.credits_requested or 0),
            status=OrderStatus(model.status),
            provider_trade_id=model.provider_trade_id,
            match_method=model.match_method,
            failure_reason=model.failure_reason,
            raw_provider_payload=model.raw_provider_payload,
            metadata=dict(model.extra_metadata or {}),
            created_at=model.created_at,
            updated_at=model.updated_at,
            paid_at=model.paid_at,
            credited_at=model.credited_at,
        )

    def _to_model(self, entity: Order) -> OrderModel:
        """将领域实体转换为数据库模型"""
        return OrderModel(
            id=entity.id,
            provider=entity.provider,
            external_reference=entity.external_reference,
            provider_trade_id=entity.provider_trade_id,
            user_id=entity.user_id,
            amount_minor=entity.amount_minor,
            credits_requested=entity.credits_requested,
            status=entity.status.value,
            match_method=entity.match_method,
            failure_reason=entity.failure_reason,
            raw_provider_payload=entity.raw_provider_payload,
            extra_metadata=dict(entity.metadata),
            created_at=entity.created_at,
            updated_at=entity.updated_at,
            paid_at=entity.paid_at,
            credited_at=entity.credited_at,
        )

    async def add(self, order: Order) -> Order:
        """创建订单"""
        try:
            db_order = self._to_model(order)
            self.session.add(db_order)
            await self.session.flush()
            await self.session.refresh(db_order)
            logger.info(
                "order_created",
                order_id=db_order.id,
                provider=db_order.provider,
                external_reference=db_order.external_reference,
                status=db_order.status,
            )
            return self._to_entity(db_order)
        except IntegrityError as e:
            await self.session.rollback()
            msg = str(e).lower()
            if "unique" in msg or "uq_orders_provider_external_reference" in msg or "duplicate" in msg:
                logger.info(
                    "order_create_conflict",
                    provider=order.provider,
                    external_reference=order.external_reference,
                )
                raise OrderAlreadyExistsException(order.provider, order.external_reference)
            raise

    async def get_by_id(self, order_id: int) -> Optional[Order]:
        """根据ID获取订单"""
        result = await self.session.execute(
            select(OrderModel).where(OrderModel.id == order_id)
        )
        db_order = result.scalar_one_or_none()
        return self._to_entity(db_order) if db_order else None

    async def get_by_external_reference(self, provider: str, external_reference: str) -> Optional[Order]:
        """根据 (provider, external_reference) 获取订单"""
        result = await self.session.execute(
            select(OrderModel).where(
                OrderModel.provider == provider,
                OrderModel.external_reference == external_reference,
            )
        )
        db_order = result.scalar_one_or_none()
        return self._to_entity(db_order) if db_order else None

    async def get_by_provider_trade_id(self, provider: str, provider_trade_id: str) -> Optional[Order]:
        result = await self.session.execute(
            select(OrderModel)
            .where(
                OrderModel.provider == provider,
                OrderModel.provider_trade_id == provider_trade_id,
            )
            .order_by(OrderModel.id.asc())
            .limit(1)
        )
        db_order = result.scalar_one_or_none()
        return self._to_entity(db_order) if db_order else None

    async def compare_and_set(self, order: Order, expected: Iterable[OrderStatus]) -> bool:
        """条件更新订单状态，返回是否命中（0 行即被其他进程抢先）"""
        expected_values = [s.value for s in expected]
        stmt = (
            update(OrderModel)
            .where(
                OrderModel.id == order.id,
                OrderModel.status.in_(expected_values),
            )
            .values({
                OrderModel.status: order.status.value,
                OrderModel.provider_trade_id: order.provider_trade_id,
                OrderModel.user_id: order.user_id,
                OrderModel.match_method: order.match_method,
                OrderModel.failure_reason: order.failure_reason,
                OrderModel.raw_provider_payload: order.raw_provider_payload,
                OrderModel.extra_metadata: dict(order.metadata),
                OrderModel.updated_at: order.updated_at or _utcnow(),
                OrderModel.paid_at: order.paid_at,
                OrderModel.credited_at: order.credited_at,
            })
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        hit = result.rowcount == 1
        logger.debug(
            "order_compare_and_set",
            order_id=order.id,
            expected=expected_values,
            target=order.status.value,
            hit=hit,
        )
        return hit

    async def mark_credited(self, order_id: int, credited_at: datetime, expected: Iterable[OrderStatus]) -> bool:
        expected_values = [s.value for s in expected]
        stmt = (
            update(OrderModel)
            .where(
                OrderModel.id == order_id,
                OrderModel.status.in_(expected_values),
            )
            .values({
                OrderModel.status: OrderStatus.CREDITED.value,
                OrderModel.credited_at: func.coalesce(OrderModel.credited_at, credited_at),
                OrderModel.updated_at: credited_at,
            })
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        hit = result.rowcount == 1
        logger.debug("order_mark_credited", order_id=order_id, expected=expected_values, hit=hit)
        return hit

    async def list_fallback_candidates(
        self,
        provider: str,
        amount_min: int,
        amount_max: int,
        created_after: datetime,
        user_id: Optional[str] = None,
        limit: int = 10,
    ) -> List[Order]:
        """金额+时间窗口兜底匹配的 pending 候选订单（最新在前）"""
        query = select(OrderModel).where(
            OrderModel.provider == provider,
            OrderModel.status == OrderStatus.PENDING.value,
            OrderModel.amount_minor >= amount_min,
            OrderModel.amount_minor <= amount_max,
            OrderModel.created_at >= created_after,
        )
        if user_id:
            query = query.where(OrderModel.user_id == user_id)
        query = query.order_by(OrderModel.created_at.desc(), OrderModel.id.desc()).limit(limit)
        result = await self.session.execute(query)
        return [self._to_entity(o) for o in result.scalars().all()]

    async def list_by_status(
        self,
        status: OrderStatus,
        limit: int = 100,
        updated_before: Optional[datetime] = None,
    ) -> List[Order]:
        """根据状态获取订单列表"""
        query = select(OrderModel).where(OrderModel.status == status.value)
        if updated_before is not None:
            query = query.where(OrderModel.updated_at < updated_before)
        query = query.order_by(OrderModel.created_at.asc(), OrderModel.id.asc()).limit(limit)
        result = await self.session.execute(query)
        return [self._to_entity(o) for o in result.scalars().all()]

    async def list_by_user(self, user_id: str, created_after: Optional[datetime] = None, limit: int = 20) -> List[Order]:
        """获取用户最近的订单"""
        query = select(OrderModel).where(OrderModel.user_id == user_id)
        if created_after is not None:
            query = query.where(OrderModel.created_at >= created_after)
        query = query.order_by(OrderModel.created_at.desc(), OrderModel.id.desc()).limit(limit)
        result = await self.session.execute(query)
        return [self._to_entity(o) for o in result.scalars().all()]

    async def cancel_superseded(self, user_id: str, provider: str, amount_minor: int) -> int:
        """取消同用户同渠道同金额的旧 pending 订单"""
        result = await self.session.execute(
            update(OrderModel)
            .where(
                OrderModel.user_id == user_id,
                OrderModel.provider == provider,
                OrderModel.amount_minor == amount_minor,
                OrderModel.status == OrderStatus.PENDING.value,
            )
            .values({OrderModel.status: OrderStatus.CANCELLED.value, OrderModel.updated_at: _utcnow()})
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
        if count:
            logger.info(
                "orders_superseded_cancelled",
                user_id=user_id,
                provider=provider,
                amount_minor=amount_minor,
                count=count,
            )
        return count

    async def expire_pending_before(self, cutoff: datetime) -> int:
        """单语句过期：只命中 pending，绝不触碰其它状态"""
        result = await self.session.execute(
            update(OrderModel)
            .where(
                OrderModel.status == OrderStatus.PENDING.value,
                OrderModel.created_at < cutoff,
            )
            .values({OrderModel.status: OrderStatus.EXPIRED.value, OrderModel.updated_at: _utcnow()})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def count_by_status(self, status: OrderStatus, created_before: Optional[datetime] = None) -> int:
        query = select(func.count(OrderModel.id)).where(OrderModel.status == status.value)
        if created_before is not None:
            query = query.where(OrderModel.created_at < created_before)
        result = await self.session.execute(query)
        return int(result.scalar_one())

    async def count_unmatched(self) -> int:
        result = await self.session.execute(
            select(func.count(OrderModel.id)).where(
                OrderModel.status == OrderStatus.FAILED.value,
                OrderModel.external_reference.like(f"{UNMATCHED_PREFIX}%"),
            )
        )
        return int(result.scalar_one())

    async def count_by_match_method(self, match_method: str) -> int:
        result = await self.session.execute(
            select(func.count(OrderModel.id)).where(OrderModel.match_method == match_method)
        )
        return int(result.scalar_one())

    async def count_statuses_since(self, created_after: datetime) -> dict[str, int]:
        result = await self.session.execute(
            select(OrderModel.status, func.count(OrderModel.id))
            .where(OrderModel.created_at >= created_after)
            .group_by(OrderModel.status)
        )
        return {status: int(count) for status, count in result.all()}

    async def list_unmatched(self, limit: int = 50) -> List[Order]:
        result = await self.session.execute(
            select(OrderModel)
            .where(
                OrderModel.status == OrderStatus.FAILED.value,
                OrderModel.external_reference.like(f"{UNMATCHED_PREFIX}%"),
            )
            .order_by(OrderModel.created_at.desc())
            .limit(limit)
        )
        return [self._to_entity(o) for o in result.scalars().all()]

    async def list_by_match_method(self, match_method: str, limit: int = 50) -> List[Order]:
        result = await self.session.execute(
            select(OrderModel)
            .where(OrderModel.match_method == match_method)
            .order_by(OrderModel.created_at.desc())
            .limit(limit)
        )
        return [self._to_entity(o) for o in result.scalars().all()]

    async def pending_amount_groups(self, min_size: int = 2) -> List[tuple[str, int, int]]:
        result = await self.session.execute(
            select(OrderModel.provider, OrderModel.amount_minor, func.count(OrderModel.id))
            .where(OrderModel.status == OrderStatus.PENDING.value)
            .group_by(OrderModel.provider, OrderModel.amount_minor)
            .having(func.count(OrderModel.id) >= min_size)
            .order_by(func.count(OrderModel.id).desc())
        )
        return [(provider, int(amount), int(count)) for provider, amount, count in result.all()]


class SQLAlchemyCreditAccountRepository(CreditAccountRepository):
    """积分账户仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def ensure(self, user_id: str) -> bool:
        """账户不存在时创建；并发创建冲突视为已存在"""
        if await self.exists(user_id):
            return False
        try:
            self.session.add(CreditAccountModel(user_id=user_id, balance=0))
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            logger.info("credit_account_create_conflict", user_id=user_id)
            return False
        logger.info("credit_account_created", user_id=user_id)
        return True

    async def exists(self, user_id: str) -> bool:
        result = await self.session.execute(
            select(func.count()).select_from(CreditAccountModel).where(CreditAccountModel.user_id == user_id)
        )
        return int(result.scalar_one()) > 0

    async def get_balance(self, user_id: str) -> Optional[int]:
        result = await self.session.execute(
            select(CreditAccountModel.balance).where(CreditAccountModel.user_id == user_id)
        )
        balance = result.scalar_one_or_none()
        return int(balance) if balance is not None else None

    async def increment(self, user_id: str, credits: int) -> bool:
        """balance = balance + credits，单语句原子自增"""
        result = await self.session.execute(
            update(CreditAccountModel)
            .where(CreditAccountModel.user_id == user_id)
            .values({
                CreditAccountModel.balance: CreditAccountModel.balance + credits,
                CreditAccountModel.updated_at: _utcnow(),
            })
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

"""
订单与积分账户仓储接口 - 定义数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional

from .entity import Order, OrderStatus


class OrderRepository(ABC):
    """订单仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def add(self, order: Order) -> Order:
        """创建订单；(provider, external_reference) 冲突时抛出 OrderAlreadyExistsException"""
        pass

    @abstractmethod
    async def get_by_id(self, order_id: int) -> Optional[Order]:
        """根据ID获取订单"""
        pass

    @abstractmethod
    async def get_by_external_reference(self, provider: str, external_reference: str) -> Optional[Order]:
        """根据 (provider, external_reference) 获取订单"""
        pass

    @abstractmethod
    async def get_by_provider_trade_id(self, provider: str, provider_trade_id: str) -> Optional[Order]:
        """根据渠道交易号获取最早确认的订单（重复投递去重）"""
        pass

    @abstractmethod
    async def compare_and_set(self, order: Order, expected: Iterable[OrderStatus]) -> bool:
        """条件更新：仅当库中状态属于 expected 时写入实体的新状态，返回是否命中"""
        pass

    @abstractmethod
    async def mark_credited(self, order_id: int, credited_at: datetime, expected: Iterable[OrderStatus]) -> bool:
        """入账状态切换：只写 status/credited_at/updated_at，不覆盖其他列"""
        pass

    @abstractmethod
    async def list_fallback_candidates(
        self,
        provider: str,
        amount_min: int,
        amount_max: int,
        created_after: datetime,
        user_id: Optional[str] = None,
        limit: int = 10,
    ) -> List[Order]:
        """金额+时间窗口兜底匹配的 pending 候选订单"""
        pass

    @abstractmethod
    async def list_by_status(
        self,
        status: OrderStatus,
        limit: int = 100,
        updated_before: Optional[datetime] = None,
    ) -> List[Order]:
        """根据状态获取订单列表（按创建时间升序）"""
        pass

    @abstractmethod
    async def list_by_user(self, user_id: str, created_after: Optional[datetime] = None, limit: int = 20) -> List[Order]:
        """获取用户最近的订单"""
        pass

    @abstractmethod
    async def cancel_superseded(self, user_id: str, provider: str, amount_minor: int) -> int:
        """取消用户同渠道同金额的旧 pending 订单，返回取消数量"""
        pass

    @abstractmethod
    async def expire_pending_before(self, cutoff: datetime) -> int:
        """将 cutoff 之前创建的 pending 订单置为 expired，返回数量"""
        pass

    @abstractmethod
    async def count_by_status(self, status: OrderStatus, created_before: Optional[datetime] = None) -> int:
        pass

    @abstractmethod
    async def count_unmatched(self) -> int:
        pass

    @abstractmethod
    async def count_by_match_method(self, match_method: str) -> int:
        pass

    @abstractmethod
    async def count_statuses_since(self, created_after: datetime) -> dict[str, int]:
        """统计时间窗口内各状态的订单数量"""
        pass

    @abstractmethod
    async def list_unmatched(self, limit: int = 50) -> List[Order]:
        pass

    @abstractmethod
    async def list_by_match_method(self, match_method: str, limit: int = 50) -> List[Order]:
        pass

    @abstractmethod
    async def pending_amount_groups(self, min_size: int = 2) -> List[tuple[str, int, int]]:
        """同渠道同金额的 pending 订单分组 (provider, amount_minor, count)"""
        pass


class CreditAccountRepository(ABC):
    """积分账户仓储抽象接口；余额只允许由入账服务修改"""

    @abstractmethod
    async def ensure(self, user_id: str) -> bool:
        """账户不存在时创建，返回是否新建"""
        pass

    @abstractmethod
    async def exists(self, user_id: str) -> bool:
        pass

    @abstractmethod
    async def get_balance(self, user_id: str) -> Optional[int]:
        pass

    @abstractmethod
    async def increment(self, user_id: str, credits: int) -> bool:
        """原子自增余额（balance = balance + credits），返回是否命中账户"""
        pass

"""Order domain exports."""
from .entity import Order, OrderStatus, MatchMethod, FailureReason
from .events import PaymentEvent
from .repository import OrderRepository, CreditAccountRepository

__all__ = [
    "Order",
    "OrderStatus",
    "MatchMethod",
    "FailureReason",
    "PaymentEvent",
    "OrderRepository",
    "CreditAccountRepository",
]

"""Infrastructure models package exports."""
from .base import Base, metadata
from .order import OrderModel, CreditAccountModel

__all__ = [
    "Base",
    "metadata",
    "OrderModel",
    "CreditAccountModel",
]

"""
Core module - shared enums and exceptions.
"""

from src.core.enums import OrderStatus, NodeStatus, RuleProtocol
from src.core.exceptions import (
    RelayError,
    CacheUnavailableError,
    NodeNotFoundError,
    NodeAuthError,
    RuleNotFoundError,
    PackageNotFoundError,
    PackageUnavailableError,
    OrderNotFoundError,
    InsufficientBalanceError,
    PaymentVerificationError,
)

__all__ = [
    "OrderStatus",
    "NodeStatus",
    "RuleProtocol",
    "RelayError",
    "CacheUnavailableError",
    "NodeNotFoundError",
    "NodeAuthError",
    "RuleNotFoundError",
    "PackageNotFoundError",
    "PackageUnavailableError",
    "OrderNotFoundError",
    "InsufficientBalanceError",
    "PaymentVerificationError",
]

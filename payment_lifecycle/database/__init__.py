"""Database package for the payment lifecycle service."""
from .connection import build_session_factory, close_db, get_session_factory, init_db
from .models import (
    Base,
    FailureKind,
    OrderClaim,
    PaymentAction,
    PaymentOrder,
    PaymentStatus,
    PaymentTransaction,
    TransactionStatus,
)

__all__ = [
    "Base",
    "FailureKind",
    "OrderClaim",
    "PaymentAction",
    "PaymentOrder",
    "PaymentStatus",
    "PaymentTransaction",
    "TransactionStatus",
    "build_session_factory",
    "close_db",
    "get_session_factory",
    "init_db",
]

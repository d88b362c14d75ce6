"""Core payment lifecycle logic."""
from typing import Optional

from payment_lifecycle.config import Settings, get_settings
from payment_lifecycle.database.connection import get_session_factory
from payment_lifecycle.integrations.gateway import GatewayAdapter

from .ledger import TransactionLedger
from .lifecycle_service import OrderLifecycleService, derive_status
from .locking import InProcessOrderLocks, OrderLocks, RedisOrderLocks, build_order_locks
from .order_store import OrderStore
from .state_validator import ALLOWED_TRANSITIONS, StateValidator


def build_lifecycle_service(
    settings: Optional[Settings] = None,
    gateway: Optional[GatewayAdapter] = None,
) -> OrderLifecycleService:
    """Wire the lifecycle service against the configured database, locks and gateway."""
    settings = settings or get_settings()
    if gateway is None:
        from payment_lifecycle.integrations.stripe_gateway import StripeGateway

        gateway = StripeGateway(settings=settings)

    session_factory = get_session_factory()
    return OrderLifecycleService(
        order_store=OrderStore(session_factory),
        ledger=TransactionLedger(session_factory),
        gateway=gateway,
        locks=build_order_locks(settings),
        settings=settings,
    )


__all__ = [
    "ALLOWED_TRANSITIONS",
    "InProcessOrderLocks",
    "OrderLifecycleService",
    "OrderLocks",
    "OrderStore",
    "RedisOrderLocks",
    "StateValidator",
    "TransactionLedger",
    "build_lifecycle_service",
    "build_order_locks",
    "derive_status",
]

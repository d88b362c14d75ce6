"""
Per-order exclusive locks.

Gateway actions are not idempotent: a duplicate capture or refund moves real
money. Only one action per order may be in flight; a second request for the
same order fails fast with OrderConflictError instead of waiting its turn and
re-sending the action.
"""
import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Dict, Optional, Protocol

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError, RedisError

from payment_lifecycle.config import Settings, get_settings
from payment_lifecycle.exceptions import OrderConflictError, PersistenceError
from payment_lifecycle.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class OrderLocks(Protocol):
    """Interface for order-level mutual exclusion."""

    def hold(self, order_id: uuid.UUID) -> AsyncContextManager[None]:
        """Hold the order's lock for the duration of the block."""
        ...


class InProcessOrderLocks:
    """Order locks for a single process, backed by asyncio locks."""

    def __init__(self) -> None:
        self._locks: Dict[uuid.UUID, asyncio.Lock] = {}

    def is_held(self, order_id: uuid.UUID) -> bool:
        """Whether an action on the order is in flight in this process."""
        lock = self._locks.get(order_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, order_id: uuid.UUID) -> AsyncIterator[None]:
        """
        Hold the order's lock for the duration of the block.

        Raises:
            OrderConflictError: If the lock is already held; never waits
        """
        lock = self._locks.setdefault(order_id, asyncio.Lock())
        if lock.locked():
            metrics.record_order_lock("conflict")
            logger.warning("order_lock_conflict", order_id=str(order_id))
            raise OrderConflictError(order_id)

        # An unlocked asyncio.Lock is acquired without yielding to the loop
        await lock.acquire()
        metrics.record_order_lock("acquired")
        started = time.monotonic()
        try:
            yield
        finally:
            lock.release()
            self._locks.pop(order_id, None)
            metrics.record_order_lock_held(time.monotonic() - started)


class RedisOrderLocks:
    """Order locks shared across processes, backed by expiring Redis locks."""

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize Redis-backed order locks.

        Args:
            redis_client: Optional Redis client (created from settings if not provided)
            settings: Optional settings override
        """
        self.settings = settings or get_settings()
        self.redis_client = redis_client

    def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    @staticmethod
    def lock_key(order_id: uuid.UUID) -> str:
        return f"payment:order-lock:{order_id}"

    @asynccontextmanager
    async def hold(self, order_id: uuid.UUID) -> AsyncIterator[None]:
        redis = self._ensure_redis()
        lock_key = self.lock_key(order_id)
        lock = redis.lock(
            lock_key,
            timeout=self.settings.order_lock_timeout,
            blocking=False,
        )

        try:
            acquired = await lock.acquire()
        except RedisError as e:
            logger.error("order_lock_unavailable", order_id=str(order_id), error=str(e))
            raise PersistenceError("Order lock store unavailable", original_error=e) from e

        if not acquired:
            metrics.record_order_lock("conflict")
            logger.warning("order_lock_conflict", order_id=str(order_id), lock_key=lock_key)
            raise OrderConflictError(order_id)

        metrics.record_order_lock("acquired")
        started = time.monotonic()
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                # Expired while held: the exclusivity window may have been breached
                logger.error(
                    "order_lock_expired_before_release",
                    order_id=str(order_id),
                    lock_key=lock_key,
                    error=str(e),
                )
            metrics.record_order_lock_held(time.monotonic() - started)


def build_order_locks(settings: Optional[Settings] = None) -> OrderLocks:
    """Redis-backed locks when Redis is configured, in-process locks otherwise."""
    settings = settings or get_settings()
    if settings.redis_url:
        return RedisOrderLocks(settings=settings)
    return InProcessOrderLocks()

"""
Order lock tests.

In-process locks run for real; Redis locks run against a mocked client.
"""
import uuid
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import LockNotOwnedError

from payment_lifecycle.config import Settings
from payment_lifecycle.core import InProcessOrderLocks, RedisOrderLocks, build_order_locks
from payment_lifecycle.exceptions import OrderConflictError, PersistenceError


class TestInProcessOrderLocks:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_holder_is_rejected(self) -> None:
        locks = InProcessOrderLocks()
        order_id = uuid.uuid4()

        async with locks.hold(order_id):
            assert locks.is_held(order_id)
            with pytest.raises(OrderConflictError) as exc_info:
                async with locks.hold(order_id):
                    pass  # pragma: no cover

        assert exc_info.value.order_id == order_id
        assert not locks.is_held(order_id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_released_when_block_raises(self) -> None:
        locks = InProcessOrderLocks()
        order_id = uuid.uuid4()

        with pytest.raises(RuntimeError):
            async with locks.hold(order_id):
                raise RuntimeError("boom")

        async with locks.hold(order_id):
            assert locks.is_held(order_id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_orders_are_independent(self) -> None:
        locks = InProcessOrderLocks()
        first, second = uuid.uuid4(), uuid.uuid4()

        async with locks.hold(first):
            async with locks.hold(second):
                assert locks.is_held(first) and locks.is_held(second)


def make_redis(acquired: Any = True) -> MagicMock:
    lock = MagicMock()
    if isinstance(acquired, Exception):
        lock.acquire = AsyncMock(side_effect=acquired)
    else:
        lock.acquire = AsyncMock(return_value=acquired)
    lock.release = AsyncMock()

    redis_client = MagicMock()
    redis_client.lock.return_value = lock
    return redis_client


class TestRedisOrderLocks:

    @pytest.fixture
    def redis_settings(self, test_settings: Settings) -> Settings:
        return test_settings.model_copy(
            update={"redis_url": "redis://localhost:6379/1", "order_lock_timeout": 30}
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_acquire_and_release(self, redis_settings: Settings) -> None:
        redis_client = make_redis(acquired=True)
        locks = RedisOrderLocks(redis_client=redis_client, settings=redis_settings)
        order_id = uuid.uuid4()

        async with locks.hold(order_id):
            pass

        redis_client.lock.assert_called_once_with(
            f"payment:order-lock:{order_id}", timeout=30, blocking=False
        )
        lock = redis_client.lock.return_value
        lock.acquire.assert_awaited_once()
        lock.release.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_held_elsewhere_is_conflict(self, redis_settings: Settings) -> None:
        redis_client = make_redis(acquired=False)
        locks = RedisOrderLocks(redis_client=redis_client, settings=redis_settings)

        with pytest.raises(OrderConflictError):
            async with locks.hold(uuid.uuid4()):
                pass  # pragma: no cover

        redis_client.lock.return_value.release.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_down_is_persistence_error(self, redis_settings: Settings) -> None:
        redis_client = make_redis(acquired=RedisConnectionError("Connection refused"))
        locks = RedisOrderLocks(redis_client=redis_client, settings=redis_settings)

        with pytest.raises(PersistenceError):
            async with locks.hold(uuid.uuid4()):
                pass  # pragma: no cover

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expired_lock_release_does_not_mask_result(
        self, redis_settings: Settings
    ) -> None:
        redis_client = make_redis(acquired=True)
        redis_client.lock.return_value.release.side_effect = LockNotOwnedError("expired")
        locks = RedisOrderLocks(redis_client=redis_client, settings=redis_settings)

        async with locks.hold(uuid.uuid4()):
            result = "done"

        assert result == "done"


@pytest.mark.unit
def test_build_order_locks(test_settings: Settings) -> None:
    assert isinstance(build_order_locks(test_settings), InProcessOrderLocks)

    redis_settings = test_settings.model_copy(update={"redis_url": "redis://localhost:6379/1"})
    assert isinstance(build_order_locks(redis_settings), RedisOrderLocks)

"""Persistence of payment orders."""
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator

import structlog
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from payment_lifecycle.database.models import OrderClaim, PaymentOrder
from payment_lifecycle.exceptions import (
    OrderConflictError,
    PersistenceError,
    ResourceNotFoundError,
)

logger = structlog.get_logger(__name__)


class OrderStore:
    """
    Create-or-update store for payment orders.

    Saves are version-checked: writing an order loaded before someone else's
    save raises OrderConflictError instead of overwriting it. Actions on an
    existing order run under a claim row so that only one process at a time
    can act on it.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def find_by_id(self, order_id: uuid.UUID) -> PaymentOrder:
        """
        Load an order by id.

        Raises:
            ResourceNotFoundError: If no such order exists
            PersistenceError: If the store is unavailable
        """
        try:
            async with self._session_factory() as session:
                order = await session.get(PaymentOrder, order_id)
        except SQLAlchemyError as e:
            logger.error("order_load_failed", order_id=str(order_id), error=str(e))
            raise PersistenceError("Failed to load payment order", original_error=e) from e

        if order is None:
            raise ResourceNotFoundError(order_id)
        return order

    async def save(self, order: PaymentOrder) -> PaymentOrder:
        """
        Insert or update an order by identity.

        Returns:
            PaymentOrder: The stored order, carrying its new version

        Raises:
            OrderConflictError: If the stored version moved on since `order` was loaded
            PersistenceError: If the store is unavailable
        """
        try:
            async with self._session_factory() as session:
                stored = await session.merge(order)
                await session.commit()
        except StaleDataError as e:
            logger.warning("order_version_conflict", order_id=str(order.id))
            raise OrderConflictError(
                order.id, "Payment order was modified concurrently"
            ) from e
        except SQLAlchemyError as e:
            logger.error("order_save_failed", order_id=str(order.id), error=str(e))
            raise PersistenceError("Failed to save payment order", original_error=e) from e

        logger.debug(
            "order_saved",
            order_id=str(stored.id),
            status=stored.status.value,
            version=stored.version,
        )
        return stored

    @asynccontextmanager
    async def claim(self, order_id: uuid.UUID, lease_seconds: float) -> AsyncIterator[None]:
        """
        Hold the order's claim row for the duration of the block.

        A claim older than its lease is treated as abandoned and taken over.

        Raises:
            OrderConflictError: If another process holds a live claim
            PersistenceError: If the store is unavailable
        """
        token = uuid.uuid4().hex
        await self._acquire_claim(order_id, token, lease_seconds)
        try:
            yield
        finally:
            await self._release_claim(order_id, token)

    async def _acquire_claim(
        self, order_id: uuid.UUID, token: str, lease_seconds: float
    ) -> None:
        now = datetime.now(timezone.utc)
        try:
            async with self._session_factory() as session:
                expired = await session.execute(
                    delete(OrderClaim).where(
                        OrderClaim.order_id == order_id,
                        OrderClaim.expires_at <= now,
                    )
                )
                if expired.rowcount:
                    logger.warning("order_claim_expired_taken_over", order_id=str(order_id))
                session.add(
                    OrderClaim(
                        order_id=order_id,
                        token=token,
                        claimed_at=now,
                        expires_at=now + timedelta(seconds=lease_seconds),
                    )
                )
                await session.commit()
        except IntegrityError as e:
            logger.warning("order_claim_conflict", order_id=str(order_id))
            raise OrderConflictError(order_id) from e
        except SQLAlchemyError as e:
            logger.error("order_claim_failed", order_id=str(order_id), error=str(e))
            raise PersistenceError("Failed to claim payment order", original_error=e) from e

    async def _release_claim(self, order_id: uuid.UUID, token: str) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(
                    delete(OrderClaim).where(
                        OrderClaim.order_id == order_id,
                        OrderClaim.token == token,
                    )
                )
                await session.commit()
        except SQLAlchemyError as e:
            # The lease still bounds how long the order stays blocked
            logger.error("order_claim_release_failed", order_id=str(order_id), error=str(e))

"""
Append-only transaction ledger.

Every gateway call attempt, successful or not, becomes exactly one row here.
Rows are never updated or deleted, so the ledger is the durable record of
what was sent to the gateway and the source of reference ids for follow-up
actions (capture/cancel need the authorization id, refund needs the capture id).
"""
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_lifecycle.database.models import (
    FailureKind,
    PaymentAction,
    PaymentTransaction,
    TransactionStatus,
)
from payment_lifecycle.exceptions import MissingReferenceTransactionError, PersistenceError

logger = structlog.get_logger(__name__)


class TransactionLedger:
    """Ledger of gateway call attempts, keyed by order id."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """
        Initialize the ledger.

        Args:
            session_factory: Factory opening one session per ledger operation
        """
        self._session_factory = session_factory

    async def append(
        self,
        order_id: uuid.UUID,
        type: PaymentAction,
        amount: Decimal,
        status: TransactionStatus,
        gateway_transaction_id: Optional[str] = None,
        raw_response: Optional[Dict[str, Any]] = None,
        failure_kind: Optional[FailureKind] = None,
        error_message: Optional[str] = None,
    ) -> PaymentTransaction:
        """
        Append a new entry for an order.

        The entry gets the next per-order sequence number and a creation time
        strictly later than the order's previous entry.

        Args:
            order_id: Owning order
            type: Action that was sent to the gateway
            amount: Amount charged or refunded in this attempt
            status: SUCCESS or FAILED
            gateway_transaction_id: Gateway-assigned id (SUCCESS only)
            raw_response: Gateway response kept for audit
            failure_kind: DECLINED or TRANSPORT (FAILED only)
            error_message: Gateway or transport error text

        Returns:
            PaymentTransaction: The stored entry

        Raises:
            PersistenceError: If the entry could not be written
        """
        if status == TransactionStatus.SUCCESS:
            failure_kind = None
        else:
            gateway_transaction_id = None

        try:
            async with self._session_factory() as session:
                previous = await session.execute(
                    select(PaymentTransaction.sequence, PaymentTransaction.created_at)
                    .where(PaymentTransaction.order_id == order_id)
                    .order_by(PaymentTransaction.sequence.desc())
                    .limit(1)
                )
                last = previous.first()

                created_at = datetime.now(timezone.utc)
                sequence = 1
                if last is not None:
                    sequence = last.sequence + 1
                    if created_at <= last.created_at:
                        created_at = last.created_at + timedelta(microseconds=1)

                entry = PaymentTransaction(
                    id=uuid.uuid4(),
                    order_id=order_id,
                    sequence=sequence,
                    type=type,
                    status=status,
                    amount=amount,
                    gateway_transaction_id=gateway_transaction_id,
                    failure_kind=failure_kind,
                    error_message=error_message,
                    raw_response=raw_response,
                    created_at=created_at,
                )
                session.add(entry)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(
                "ledger_append_failed",
                order_id=str(order_id),
                type=type.value,
                status=status.value,
                error=str(e),
            )
            raise PersistenceError("Failed to append ledger entry", original_error=e) from e

        logger.info(
            "ledger_entry_appended",
            order_id=str(order_id),
            sequence=entry.sequence,
            type=type.value,
            status=status.value,
            gateway_transaction_id=gateway_transaction_id,
        )
        return entry

    async def last_successful_transaction_id(self, order_id: uuid.UUID) -> str:
        """
        Gateway id of the most recent SUCCESS entry for an order.

        Raises:
            MissingReferenceTransactionError: If the order has no SUCCESS entry
            PersistenceError: If the ledger could not be read
        """
        stmt = (
            select(PaymentTransaction.gateway_transaction_id)
            .where(
                PaymentTransaction.order_id == order_id,
                PaymentTransaction.status == TransactionStatus.SUCCESS,
            )
            .order_by(
                PaymentTransaction.created_at.desc(),
                PaymentTransaction.sequence.desc(),
            )
            .limit(1)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                gateway_transaction_id = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to read ledger", original_error=e) from e

        if gateway_transaction_id is None:
            logger.error("ledger_reference_missing", order_id=str(order_id))
            raise MissingReferenceTransactionError(order_id)

        return gateway_transaction_id

    async def list_for_order(self, order_id: uuid.UUID) -> List[PaymentTransaction]:
        """All entries of an order, oldest first."""
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.order_id == order_id)
            .order_by(PaymentTransaction.sequence.asc())
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to read ledger", original_error=e) from e

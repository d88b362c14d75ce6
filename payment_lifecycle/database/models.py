"""SQLAlchemy database models for the payment lifecycle service."""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from payment_lifecycle.exceptions import LedgerImmutableError


class PaymentStatus(str, Enum):
    """Lifecycle status of a payment order."""

    CREATED = "CREATED"
    AUTHORIZED = "AUTHORIZED"
    CAPTURED = "CAPTURED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    FAILED = "FAILED"


class PaymentAction(str, Enum):
    """Gateway action requested on an order; also the ledger entry type."""

    PURCHASE = "PURCHASE"
    AUTHORIZE = "AUTHORIZE"
    CAPTURE = "CAPTURE"
    CANCEL = "CANCEL"
    REFUND = "REFUND"


class TransactionStatus(str, Enum):
    """Outcome of a single gateway call attempt."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class FailureKind(str, Enum):
    """Why a gateway call attempt failed."""

    DECLINED = "DECLINED"  # gateway rejected it, not retryable as-is
    TRANSPORT = "TRANSPORT"  # timeout/connection, outcome unknown


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime stored as UTC.

    SQLite drops tzinfo on round-trip; values are normalised back to UTC on load.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(19, 4, asdecimal=True)


def _enum_column(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        validate_strings=True,
        length=32,
    )


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentOrder(Base):
    """
    Payment orders table.

    Amount and currency are fixed at creation. Status changes only through
    the lifecycle service; `version` guards against lost updates.
    """

    __tablename__ = "payment_orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus, "payment_status"), nullable=False, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_order_amount"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_payment_orders_created", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentOrder."""
        return (
            f"<PaymentOrder(id={self.id}, amount={self.amount} {self.currency}, "
            f"status={self.status})>"
        )


class PaymentTransaction(Base):
    """
    Transaction ledger table.

    One row per gateway call attempt, written right after the call returns.
    Immutable once written; `sequence` orders entries within an order.
    """

    __tablename__ = "payment_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payment_orders.id"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[PaymentAction] = mapped_column(
        _enum_column(PaymentAction, "payment_action"), nullable=False
    )
    status: Mapped[TransactionStatus] = mapped_column(
        _enum_column(TransactionStatus, "transaction_status"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    gateway_transaction_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    failure_kind: Mapped[FailureKind | None] = mapped_column(
        _enum_column(FailureKind, "failure_kind"), nullable=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_response: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("order_id", "sequence", name="uq_payment_transactions_order_sequence"),
        CheckConstraint(
            "status = 'FAILED' OR gateway_transaction_id IS NOT NULL",
            name="success_has_gateway_id",
        ),
        Index("idx_payment_transactions_order_status", "order_id", "status", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of PaymentTransaction."""
        return (
            f"<PaymentTransaction(order_id={self.order_id}, seq={self.sequence}, "
            f"type={self.type}, status={self.status})>"
        )


class OrderClaim(Base):
    """
    In-flight claims on payment orders.

    One row per order with an action in progress. The primary key makes the
    claim exclusive across every process sharing the database; `expires_at`
    lets a claim left behind by a crashed worker be taken over.
    """

    __tablename__ = "payment_order_claims"

    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    token: Mapped[str] = mapped_column(String(32), nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(timezone=True), nullable=False)


@event.listens_for(PaymentTransaction, "before_update")
def _reject_ledger_update(mapper: Any, connection: Any, target: PaymentTransaction) -> None:
    raise LedgerImmutableError(f"Ledger entry {target.id} cannot be modified")


@event.listens_for(PaymentTransaction, "before_delete")
def _reject_ledger_delete(mapper: Any, connection: Any, target: PaymentTransaction) -> None:
    raise LedgerImmutableError(f"Ledger entry {target.id} cannot be deleted")

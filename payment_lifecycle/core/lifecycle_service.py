"""
Payment order lifecycle orchestration.

Every action follows the same flow:
1. Acquire the order lock, then the order's claim row (follow-up actions)
2. Load (or create) the order
3. Validate the transition
4. Resolve the reference transaction id from the ledger (follow-up actions)
5. Call the gateway under a bounded timeout
6. Append the outcome to the ledger, success or failure
7. Derive the new status and save the order
8. Release the claim and the lock
"""
import asyncio
import time
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog

from payment_lifecycle.config import Settings, get_settings
from payment_lifecycle.core.ledger import TransactionLedger
from payment_lifecycle.core.locking import InProcessOrderLocks, OrderLocks
from payment_lifecycle.core.order_store import OrderStore
from payment_lifecycle.core.state_validator import StateValidator
from payment_lifecycle.database.models import (
    FailureKind,
    PaymentAction,
    PaymentOrder,
    PaymentStatus,
    PaymentTransaction,
    TransactionStatus,
)
from payment_lifecycle.exceptions import (
    GatewayTransportError,
    OrderConflictError,
    PaymentError,
    PaymentValidationError,
    PersistenceError,
    ReconciliationRequiredError,
)
from payment_lifecycle.integrations.gateway import GatewayAdapter, GatewayOutcome
from payment_lifecycle.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Status an order moves to when the gateway accepts the action
SUCCESS_STATUS: Dict[PaymentAction, PaymentStatus] = {
    PaymentAction.PURCHASE: PaymentStatus.CAPTURED,
    PaymentAction.AUTHORIZE: PaymentStatus.AUTHORIZED,
    PaymentAction.CAPTURE: PaymentStatus.CAPTURED,
    PaymentAction.CANCEL: PaymentStatus.CANCELLED,
}

GatewayCall = Callable[[PaymentOrder, str], Awaitable[GatewayOutcome]]


def derive_status(
    order: PaymentOrder,
    action: PaymentAction,
    outcome: GatewayOutcome,
    amount: Decimal,
) -> PaymentStatus:
    """
    Status of the order after a gateway round-trip.

    A failed refund leaves the order where it was: the capture it refers to
    still stands. Every other failed action makes the order FAILED.
    """
    if action == PaymentAction.REFUND:
        if not outcome.success:
            return order.status
        if amount < order.amount:
            return PaymentStatus.PARTIALLY_REFUNDED
        return PaymentStatus.REFUNDED

    if not outcome.success:
        return PaymentStatus.FAILED
    return SUCCESS_STATUS[action]


class OrderLifecycleService:
    """
    Orchestrates purchase, authorize, capture, cancel and refund.

    Collaborators are supplied by the caller; the service holds no state
    beyond the order locks.
    """

    def __init__(
        self,
        order_store: OrderStore,
        ledger: TransactionLedger,
        gateway: GatewayAdapter,
        locks: Optional[OrderLocks] = None,
        validator: Optional[StateValidator] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the lifecycle service.

        Args:
            order_store: Order persistence
            ledger: Transaction ledger
            gateway: Payment gateway adapter
            locks: Optional order locks (in-process locks if not provided)
            validator: Optional state validator
            settings: Optional settings override
        """
        self.settings = settings or get_settings()
        self.order_store = order_store
        self.ledger = ledger
        self.gateway = gateway
        self.locks = locks or InProcessOrderLocks()
        self.validator = validator or StateValidator()

        logger.info("lifecycle_service_initialized", gateway=type(gateway).__name__)

    # ------------------------------------------------------------------
    # Caller-facing operations
    # ------------------------------------------------------------------

    async def purchase(self, amount: Union[Decimal, str, int], currency: str) -> PaymentOrder:
        """Create an order and charge it in one step (authorize + capture)."""
        return await self._instrumented(
            PaymentAction.PURCHASE,
            lambda: self._start_order(
                PaymentAction.PURCHASE, amount, currency, self.gateway.purchase
            ),
        )

    async def authorize(self, amount: Union[Decimal, str, int], currency: str) -> PaymentOrder:
        """Create an order and place a hold for its amount."""
        return await self._instrumented(
            PaymentAction.AUTHORIZE,
            lambda: self._start_order(
                PaymentAction.AUTHORIZE, amount, currency, self.gateway.authorize
            ),
        )

    async def capture(self, order_id: Union[uuid.UUID, str]) -> PaymentOrder:
        """Settle an authorized order."""
        return await self._instrumented(
            PaymentAction.CAPTURE,
            lambda: self._follow_up(PaymentAction.CAPTURE, order_id, self.gateway.capture),
        )

    async def cancel(self, order_id: Union[uuid.UUID, str]) -> PaymentOrder:
        """Void an authorized order before capture."""
        return await self._instrumented(
            PaymentAction.CANCEL,
            lambda: self._follow_up(PaymentAction.CANCEL, order_id, self.gateway.cancel),
        )

    async def refund(
        self, order_id: Union[uuid.UUID, str], amount: Union[Decimal, str, int]
    ) -> PaymentOrder:
        """Refund part or all of a captured order."""
        refund_amount = self._validate_amount(amount)

        async def _refund_call(order: PaymentOrder, ref_txn_id: str) -> GatewayOutcome:
            return await self.gateway.refund(order, ref_txn_id, refund_amount)

        return await self._instrumented(
            PaymentAction.REFUND,
            lambda: self._follow_up(
                PaymentAction.REFUND, order_id, _refund_call, amount=refund_amount
            ),
        )

    async def get_order(self, order_id: Union[uuid.UUID, str]) -> PaymentOrder:
        """
        Load an order.

        Raises:
            ResourceNotFoundError: If the order does not exist
        """
        return await self.order_store.find_by_id(self._as_uuid(order_id))

    async def list_transactions(self, order_id: Union[uuid.UUID, str]) -> List[PaymentTransaction]:
        """Ledger entries of an existing order, oldest first."""
        order = await self.get_order(order_id)
        return await self.ledger.list_for_order(order.id)

    # ------------------------------------------------------------------
    # Flow
    # ------------------------------------------------------------------

    async def _start_order(
        self,
        action: PaymentAction,
        amount: Union[Decimal, str, int],
        currency: str,
        gateway_call: Callable[[PaymentOrder], Awaitable[GatewayOutcome]],
    ) -> PaymentOrder:
        order_amount = self._validate_amount(amount)
        order_currency = self._validate_currency(currency)

        now = datetime.now(timezone.utc)
        order = PaymentOrder(
            id=uuid.uuid4(),
            amount=order_amount,
            currency=order_currency,
            status=PaymentStatus.CREATED,
            created_at=now,
            updated_at=now,
        )

        logger.info(
            "order_action_started",
            action=action.value,
            order_id=str(order.id),
            amount=str(order_amount),
            currency=order_currency,
        )

        async with self.locks.hold(order.id):
            order = await self.order_store.save(order)
            self.validator.validate(order.status, action)
            return await self._execute_action(
                order, action, order.amount, lambda: gateway_call(order)
            )

    async def _follow_up(
        self,
        action: PaymentAction,
        order_id: Union[uuid.UUID, str],
        gateway_call: GatewayCall,
        amount: Optional[Decimal] = None,
    ) -> PaymentOrder:
        order_uuid = self._as_uuid(order_id)
        logger.info("order_action_started", action=action.value, order_id=str(order_uuid))

        lease = self.settings.order_lock_timeout
        async with self.locks.hold(order_uuid), self.order_store.claim(order_uuid, lease):
            order = await self.order_store.find_by_id(order_uuid)
            self.validator.validate(order.status, action)
            ref_txn_id = await self.ledger.last_successful_transaction_id(order.id)

            action_amount = amount if amount is not None else order.amount
            if action == PaymentAction.REFUND and action_amount > order.amount:
                logger.warning(
                    "refund_exceeds_order_amount",
                    order_id=str(order.id),
                    refund_amount=str(action_amount),
                    order_amount=str(order.amount),
                )

            return await self._execute_action(
                order, action, action_amount, lambda: gateway_call(order, ref_txn_id)
            )

    async def _execute_action(
        self,
        order: PaymentOrder,
        action: PaymentAction,
        amount: Decimal,
        invoke: Callable[[], Awaitable[GatewayOutcome]],
    ) -> PaymentOrder:
        """Call the gateway, record the attempt, then move the order."""
        transport_error: Optional[GatewayTransportError] = None
        try:
            outcome = await self._call_gateway(order, action, invoke)
        except GatewayTransportError as e:
            transport_error = e
            outcome = GatewayOutcome(
                success=False,
                error_message=e.message,
                raw_response={"transport_failure": True, "error": e.message},
            )

        if outcome.success:
            failure_kind = None
        elif transport_error is not None:
            failure_kind = FailureKind.TRANSPORT
        else:
            failure_kind = FailureKind.DECLINED

        # The gateway may have moved money when it accepted the call or when
        # we cannot tell what it did
        gateway_acted = outcome.success or transport_error is not None

        try:
            await self.ledger.append(
                order.id,
                action,
                amount,
                TransactionStatus.SUCCESS if outcome.success else TransactionStatus.FAILED,
                gateway_transaction_id=outcome.gateway_txn_id,
                raw_response=outcome.raw_response,
                failure_kind=failure_kind,
                error_message=outcome.error_message,
            )
        except PersistenceError as e:
            if gateway_acted:
                raise self._reconciliation_required(order, action, outcome, e) from e
            raise

        previous_status = order.status
        new_status = derive_status(order, action, outcome, amount)
        if new_status != previous_status:
            order.status = new_status
            order.updated_at = self._next_timestamp(order.updated_at)
            try:
                order = await self.order_store.save(order)
            except (PersistenceError, OrderConflictError) as e:
                if gateway_acted:
                    raise self._reconciliation_required(order, action, outcome, e) from e
                raise

        logger.info(
            "order_action_completed",
            action=action.value,
            order_id=str(order.id),
            previous_status=previous_status.value,
            status=order.status.value,
            gateway_transaction_id=outcome.gateway_txn_id,
        )

        if transport_error is not None:
            transport_error.attach_order(order.id)
            raise transport_error
        return order

    async def _call_gateway(
        self,
        order: PaymentOrder,
        action: PaymentAction,
        invoke: Callable[[], Awaitable[GatewayOutcome]],
    ) -> GatewayOutcome:
        """
        Invoke the gateway with a bounded timeout.

        Raises:
            GatewayTransportError: On timeout or transport failure
        """
        timeout = self.settings.gateway_timeout_seconds
        try:
            outcome = await asyncio.wait_for(invoke(), timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.error(
                "gateway_transport_failure",
                action=action.value,
                order_id=str(order.id),
                error="timeout",
                timeout_seconds=timeout,
                retry_candidate=True,
            )
            raise GatewayTransportError(
                f"Gateway {action.value} timed out after {timeout}s",
                order_id=order.id,
                original_error=e,
            ) from e
        except GatewayTransportError as e:
            logger.error(
                "gateway_transport_failure",
                action=action.value,
                order_id=str(order.id),
                error=e.message,
                retry_candidate=True,
            )
            e.attach_order(order.id)
            raise

        if not outcome.success:
            logger.warning(
                "gateway_business_decline",
                action=action.value,
                order_id=str(order.id),
                error=outcome.error_message,
                retry_candidate=False,
            )
        return outcome

    def _reconciliation_required(
        self,
        order: PaymentOrder,
        action: PaymentAction,
        outcome: GatewayOutcome,
        error: PaymentError,
    ) -> ReconciliationRequiredError:
        metrics.record_reconciliation_required(action.value)
        logger.critical(
            "order_needs_reconciliation",
            action=action.value,
            order_id=str(order.id),
            gateway_success=outcome.success,
            gateway_transaction_id=outcome.gateway_txn_id,
            error=error.message,
        )
        return ReconciliationRequiredError(
            order.id, action, outcome.gateway_txn_id, original_error=error
        )

    async def _instrumented(
        self, action: PaymentAction, run: Callable[[], Awaitable[PaymentOrder]]
    ) -> PaymentOrder:
        started = time.monotonic()
        try:
            order = await run()
        except PaymentError as e:
            metrics.record_operation(action.value, e.error_code, time.monotonic() - started)
            raise
        metrics.record_operation(action.value, order.status.value, time.monotonic() - started)
        return order

    # ------------------------------------------------------------------
    # Input handling
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_amount(amount: Any) -> Decimal:
        """
        Parse a positive monetary amount.

        Raises:
            PaymentValidationError: If the amount is not a positive number
        """
        if isinstance(amount, float):
            amount = str(amount)
        try:
            value = Decimal(amount)
        except (InvalidOperation, TypeError, ValueError) as e:
            raise PaymentValidationError(f"Invalid amount: {amount!r}") from e

        if not value.is_finite() or value <= 0:
            raise PaymentValidationError("Amount must be positive")
        return value

    @staticmethod
    def _validate_currency(currency: Any) -> str:
        if not isinstance(currency, str) or len(currency) != 3 or not currency.isalpha():
            raise PaymentValidationError("Currency must be 3-letter code")
        return currency.upper()

    @staticmethod
    def _as_uuid(order_id: Union[uuid.UUID, str]) -> uuid.UUID:
        if isinstance(order_id, uuid.UUID):
            return order_id
        try:
            return uuid.UUID(str(order_id))
        except ValueError as e:
            raise PaymentValidationError(f"Invalid order id: {order_id}") from e

    @staticmethod
    def _next_timestamp(previous: datetime) -> datetime:
        """Current UTC time, nudged past `previous` so updates strictly increase."""
        now = datetime.now(timezone.utc)
        if previous is not None and now <= previous:
            return previous + timedelta(microseconds=1)
        return now

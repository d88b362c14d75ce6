"""
Stripe implementation of the gateway boundary.

Implements:
- Purchase/authorize as confirmed PaymentIntents (automatic/manual capture)
- Capture, cancel and refund against a prior PaymentIntent
- Exponential backoff for transient errors
- Circuit breaker pattern
- Stripe idempotency keys per logical call, reused across retries
"""
import asyncio
import time
import uuid
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional

import stripe
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from payment_lifecycle.config import Settings, get_settings
from payment_lifecycle.database.models import PaymentOrder
from payment_lifecycle.exceptions import GatewayTransportError
from payment_lifecycle.integrations.gateway import GatewayAdapter, GatewayOutcome
from payment_lifecycle.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# ISO 4217 currencies Stripe charges in whole units
ZERO_DECIMAL_CURRENCIES = frozenset(
    {
        "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
        "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
    }
)


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Business decline, don't retry
    RATE_LIMIT = "rate_limit"  # Retry with backoff


class StripeDecline(Exception):
    """Stripe rejected the request; reported to callers as a declined outcome."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a decimal amount to the integer minor units Stripe expects."""
    exponent = 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2
    scaled = (amount * (Decimal(10) ** exponent)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(scaled)


class CircuitBreaker:
    """
    Circuit breaker for Stripe API calls.

    Stops sending requests for a while after repeated transport failures.
    Business declines do not count as failures.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self) -> None:
        """
        Check the circuit before a call.

        Raises:
            GatewayTransportError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayTransportError("Gateway circuit breaker is open")

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


class StripeGateway(GatewayAdapter):
    """
    Gateway adapter for Stripe PaymentIntents.

    Gateway transaction ids are PaymentIntent ids for purchase, authorize,
    capture and cancel, and Refund ids for refunds.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """Initialize Stripe gateway."""
        settings = settings or get_settings()
        if not settings.stripe_secret_key:
            raise ValueError("stripe_secret_key must be configured to use the Stripe gateway")

        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        # Retries are handled here so idempotency keys stay under our control
        stripe.max_network_retries = 0
        self.settings = settings
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            timeout=settings.circuit_breaker_timeout,
        )

        logger.info(
            "stripe_gateway_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    async def purchase(self, order: PaymentOrder) -> GatewayOutcome:
        return await self._create_intent(order, "purchase", capture_method="automatic")

    async def authorize(self, order: PaymentOrder) -> GatewayOutcome:
        return await self._create_intent(order, "authorize", capture_method="manual")

    async def capture(self, order: PaymentOrder, ref_txn_id: str) -> GatewayOutcome:
        key = self._idempotency_key(order, "capture")
        return await self._run(
            "capture",
            lambda: stripe.PaymentIntent.capture(ref_txn_id, idempotency_key=key),
            accepted_statuses=frozenset({"succeeded"}),
        )

    async def cancel(self, order: PaymentOrder, ref_txn_id: str) -> GatewayOutcome:
        key = self._idempotency_key(order, "cancel")
        return await self._run(
            "cancel",
            lambda: stripe.PaymentIntent.cancel(ref_txn_id, idempotency_key=key),
            accepted_statuses=frozenset({"canceled"}),
        )

    async def refund(
        self, order: PaymentOrder, ref_txn_id: str, refund_amount: Decimal
    ) -> GatewayOutcome:
        key = self._idempotency_key(order, "refund")
        amount = to_minor_units(refund_amount, order.currency)

        def _create_refund() -> stripe.Refund:
            payment_intent_id = ref_txn_id
            if ref_txn_id.startswith("re_"):
                # Follow-up refund: the latest reference is the previous refund
                payment_intent_id = stripe.Refund.retrieve(ref_txn_id).payment_intent
            return stripe.Refund.create(
                payment_intent=payment_intent_id,
                amount=amount,
                metadata={"order_id": str(order.id)},
                idempotency_key=key,
            )

        return await self._run(
            "refund",
            _create_refund,
            accepted_statuses=frozenset({"succeeded", "pending"}),
        )

    async def _create_intent(
        self, order: PaymentOrder, action: str, capture_method: str
    ) -> GatewayOutcome:
        key = self._idempotency_key(order, action)
        amount = to_minor_units(order.amount, order.currency)

        def _create() -> stripe.PaymentIntent:
            return stripe.PaymentIntent.create(
                amount=amount,
                currency=order.currency.lower(),
                payment_method=self.settings.stripe_payment_method,
                capture_method=capture_method,
                confirm=True,
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                metadata={"order_id": str(order.id)},
                idempotency_key=key,
            )

        accepted = "succeeded" if capture_method == "automatic" else "requires_capture"
        return await self._run(action, _create, accepted_statuses=frozenset({accepted}))

    async def _run(
        self,
        action: str,
        call: Callable[[], Any],
        accepted_statuses: FrozenSet[str],
    ) -> GatewayOutcome:
        """
        Execute a Stripe call and turn the result into an outcome.

        Raises:
            GatewayTransportError: If Stripe could not be reached after retries
        """
        started = time.monotonic()
        try:
            result = await self._execute(action, call)
        except StripeDecline as e:
            metrics.record_gateway_call(action, "declined", time.monotonic() - started)
            return GatewayOutcome.declined(
                e.message, raw_response={"error_code": e.code, "error": e.message}
            )
        except GatewayTransportError:
            metrics.record_gateway_call(action, "transport_failure", time.monotonic() - started)
            raise

        raw_response = self._summarize(result)
        if result.status in accepted_statuses:
            metrics.record_gateway_call(action, "success", time.monotonic() - started)
            return GatewayOutcome.approved(result.id, raw_response=raw_response)

        metrics.record_gateway_call(action, "declined", time.monotonic() - started)
        return GatewayOutcome.declined(self._failure_message(result), raw_response=raw_response)

    async def _execute(self, action: str, call: Callable[[], Any]) -> Any:
        """Run a blocking SDK call in the executor, retrying transient errors."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(GatewayTransportError),
            stop=stop_after_attempt(self.settings.gateway_retry_max_attempts),
            wait=wait_exponential(multiplier=self.settings.gateway_retry_base_delay, max=8),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._call_once(action, call)

    async def _call_once(self, action: str, call: Callable[[], Any]) -> Any:
        self.circuit_breaker.before_call()
        loop = asyncio.get_running_loop()

        logger.info("stripe_request", action=action)
        try:
            result = await loop.run_in_executor(None, call)
        except stripe.StripeError as e:
            error_type = self._classify_error(e)
            logger.warning(
                "stripe_api_error",
                action=action,
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            if error_type == StripeErrorType.PERMANENT:
                self.circuit_breaker.on_success()
                raise StripeDecline(
                    getattr(e, "user_message", None) or str(e), getattr(e, "code", None)
                ) from e
            self.circuit_breaker.on_failure()
            raise GatewayTransportError(
                f"Stripe {action} failed: {e}", original_error=e
            ) from e

        self.circuit_breaker.on_success()
        logger.info(
            "stripe_response",
            action=action,
            object_id=getattr(result, "id", None),
            status=getattr(result, "status", None),
        )
        return result

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(error, (stripe.CardError, stripe.InvalidRequestError)):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    @staticmethod
    def _idempotency_key(order: PaymentOrder, action: str) -> str:
        return f"{order.id}:{action}:{uuid.uuid4().hex}"

    @staticmethod
    def _failure_message(result: Any) -> str:
        last_error = getattr(result, "last_payment_error", None)
        message = getattr(last_error, "message", None) if last_error else None
        if isinstance(message, str) and message:
            return message
        return f"Unexpected {getattr(result, 'object', 'object')} status: {result.status}"

    @staticmethod
    def _summarize(result: Any) -> Dict[str, Any]:
        """Keep the scalar fields of a Stripe object for the audit trail."""
        summary: Dict[str, Any] = {}
        for name in ("id", "object", "status", "amount", "amount_received", "currency", "payment_intent"):
            value = getattr(result, name, None)
            if isinstance(value, (str, int)):
                summary[name] = value
        return summary

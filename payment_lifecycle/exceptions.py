"""
Exception taxonomy for the payment lifecycle service.

Every error carries:
- Error code (for client handling)
- HTTP status code (for API responses)
- Retryable flag (whether a later attempt may succeed)
"""
import uuid
from typing import Any, Dict, Optional

# Context entries echoed back to API callers
BODY_CONTEXT_FIELDS = ("order_id", "action", "gateway_transaction_id")


class PaymentError(Exception):
    """Base exception for payment lifecycle errors."""

    error_code = "PAYMENT_ERROR"
    http_status = 500
    retryable = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        body: Dict[str, Any] = {"error": self.error_code, "message": self.message}
        for key in BODY_CONTEXT_FIELDS:
            if self.context.get(key) is not None:
                body[key] = self.context[key]
        return body


class PaymentValidationError(PaymentError):
    """Raised when payment input validation fails."""

    error_code = "VALIDATION_ERROR"
    http_status = 400


class InvalidTransitionError(PaymentError):
    """Attempted action is not legal for the order's current status."""

    error_code = "INVALID_PAYMENT_STATE"
    http_status = 400

    def __init__(self, current_status: Any, action: Any):
        super().__init__(
            f"{_label(action)} not allowed in {_label(current_status)} state",
            current_status=_label(current_status),
            action=_label(action),
        )
        self.current_status = current_status
        self.action = action


class ResourceNotFoundError(PaymentError):
    """Unknown payment order id."""

    error_code = "RESOURCE_NOT_FOUND"
    http_status = 404

    def __init__(self, order_id: uuid.UUID | str):
        super().__init__("Payment order not found", order_id=str(order_id))
        self.order_id = order_id


class MissingReferenceTransactionError(PaymentError):
    """
    No prior successful ledger entry exists where one is structurally required.

    Signals data or flow corruption; needs manual intervention.
    """

    error_code = "MISSING_REFERENCE_TRANSACTION"
    http_status = 412

    def __init__(self, order_id: uuid.UUID | str):
        super().__init__(
            "No successful transaction found for this order", order_id=str(order_id)
        )
        self.order_id = order_id


class OrderConflictError(PaymentError):
    """Another action on the same order is in flight, or the order record is stale."""

    error_code = "ORDER_CONFLICT"
    http_status = 409
    retryable = True

    def __init__(self, order_id: uuid.UUID | str, message: Optional[str] = None):
        super().__init__(
            message or "Another operation is in progress for this order",
            order_id=str(order_id),
        )
        self.order_id = order_id


class GatewayTransportError(PaymentError):
    """
    Timeout or connection failure talking to the gateway.

    The monetary outcome at the gateway is unknown.
    """

    error_code = "GATEWAY_TRANSPORT_FAILURE"
    http_status = 504
    retryable = True

    def __init__(
        self,
        message: str,
        order_id: uuid.UUID | str | None = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, order_id=str(order_id) if order_id else None)
        self.order_id = order_id
        self.original_error = original_error

    def attach_order(self, order_id: uuid.UUID | str) -> None:
        """Record which order the failed call was for."""
        self.order_id = order_id
        self.context["order_id"] = str(order_id)


class PersistenceError(PaymentError):
    """Order or ledger store unavailable."""

    error_code = "PERSISTENCE_FAILURE"
    http_status = 503

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class ReconciliationRequiredError(PaymentError):
    """
    The gateway acted but the local record failed to update.

    Retrying naively could double-charge.
    """

    error_code = "NEEDS_RECONCILIATION"
    http_status = 500

    def __init__(
        self,
        order_id: uuid.UUID | str,
        action: Any,
        gateway_transaction_id: Optional[str],
        original_error: Optional[Exception] = None,
    ):
        super().__init__(
            f"Gateway {_label(action)} completed but local state could not be saved",
            order_id=str(order_id),
            action=_label(action),
            gateway_transaction_id=gateway_transaction_id,
        )
        self.order_id = order_id
        self.action = action
        self.gateway_transaction_id = gateway_transaction_id
        self.original_error = original_error


class LedgerImmutableError(PaymentError):
    """Raised when something tries to update or delete a ledger entry."""

    error_code = "LEDGER_IMMUTABLE"


def _label(value: Any) -> str:
    return getattr(value, "value", str(value))

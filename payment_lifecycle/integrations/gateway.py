"""
Payment gateway boundary.

The lifecycle service only talks to the remote processor through this
interface. Business declines (card declined, already voided, ...) come back
as an unsuccessful GatewayOutcome; timeouts and connection failures raise
GatewayTransportError because the gateway's decision is unknown.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

from payment_lifecycle.database.models import PaymentOrder


@dataclass(frozen=True)
class GatewayOutcome:
    """Result of one gateway call."""

    success: bool
    gateway_txn_id: Optional[str] = None
    error_message: Optional[str] = None
    raw_response: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def approved(cls, gateway_txn_id: str, raw_response: Optional[Dict[str, Any]] = None) -> "GatewayOutcome":
        return cls(success=True, gateway_txn_id=gateway_txn_id, raw_response=raw_response or {})

    @classmethod
    def declined(cls, error_message: str, raw_response: Optional[Dict[str, Any]] = None) -> "GatewayOutcome":
        return cls(success=False, error_message=error_message, raw_response=raw_response or {})


class GatewayAdapter(ABC):
    """One operation per lifecycle action."""

    @abstractmethod
    async def purchase(self, order: PaymentOrder) -> GatewayOutcome:
        """Authorize and capture the order amount in one step."""

    @abstractmethod
    async def authorize(self, order: PaymentOrder) -> GatewayOutcome:
        """Place a hold for the order amount."""

    @abstractmethod
    async def capture(self, order: PaymentOrder, ref_txn_id: str) -> GatewayOutcome:
        """Settle a prior authorization."""

    @abstractmethod
    async def cancel(self, order: PaymentOrder, ref_txn_id: str) -> GatewayOutcome:
        """Void a prior authorization before capture."""

    @abstractmethod
    async def refund(
        self, order: PaymentOrder, ref_txn_id: str, refund_amount: Decimal
    ) -> GatewayOutcome:
        """Return part or all of a captured amount."""

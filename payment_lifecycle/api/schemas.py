"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from payment_lifecycle.database.models import (
    FailureKind,
    PaymentAction,
    PaymentStatus,
    TransactionStatus,
)


class PurchaseRequest(BaseModel):
    """Request schema for purchase and authorize."""

    amount: Decimal = Field(..., gt=0, description="Order amount in major units (e.g., 10.50)")
    currency: str = Field(..., min_length=3, max_length=3, description="Currency code (e.g., USD)")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        if not v.isalpha():
            raise ValueError("Currency must be 3-letter code")
        return v.upper()

    model_config = {
        "json_schema_extra": {
            "examples": [{"amount": "100.00", "currency": "USD"}]
        }
    }


class RefundRequest(BaseModel):
    """Request schema for refunding an order."""

    amount: Decimal = Field(..., gt=0, description="Amount to refund in major units")

    model_config = {
        "json_schema_extra": {
            "examples": [{"amount": "40.00"}]
        }
    }


class PaymentResponse(BaseModel):
    """Order as returned by every lifecycle operation."""

    order_id: UUID = Field(..., description="Payment order ID")
    status: PaymentStatus = Field(..., description="Order status")
    amount: Decimal = Field(..., description="Order amount")
    currency: str = Field(..., description="Currency code")


class TransactionResponse(BaseModel):
    """One ledger entry."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sequence: int
    type: PaymentAction
    status: TransactionStatus
    amount: Decimal
    gateway_transaction_id: Optional[str] = None
    failure_kind: Optional[FailureKind] = None
    error_message: Optional[str] = None
    created_at: datetime


class TransactionListResponse(BaseModel):
    """Ledger of an order, oldest entry first."""

    order_id: UUID
    transactions: List[TransactionResponse]


class ErrorResponse(BaseModel):
    """Error body returned for every failed request."""

    error: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable message")
    order_id: Optional[str] = Field(default=None, description="Order the failure concerns")
    action: Optional[str] = Field(default=None, description="Action that failed")
    gateway_transaction_id: Optional[str] = Field(
        default=None, description="Gateway reference of an action that needs reconciliation"
    )
    timestamp: datetime = Field(..., description="Time of the failure (UTC)")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")

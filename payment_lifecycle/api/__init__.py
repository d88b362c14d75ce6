"""FastAPI application and routes."""
from .main import app
from .schemas import (
    ErrorResponse,
    PaymentResponse,
    PurchaseRequest,
    RefundRequest,
    TransactionResponse,
)

__all__ = [
    "app",
    "ErrorResponse",
    "PaymentResponse",
    "PurchaseRequest",
    "RefundRequest",
    "TransactionResponse",
]

"""
API routes for the payment order lifecycle.
"""
from functools import lru_cache
from typing import Any, Dict
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from payment_lifecycle.core import OrderLifecycleService, build_lifecycle_service
from payment_lifecycle.database.models import PaymentOrder
from payment_lifecycle.monitoring.health import HealthCheck

from .schemas import (
    ErrorResponse,
    HealthCheckResponse,
    PaymentResponse,
    PurchaseRequest,
    RefundRequest,
    TransactionListResponse,
    TransactionResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/api/payments", tags=["payments"])
monitoring_router = APIRouter(tags=["monitoring"])

ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    400: {"model": ErrorResponse, "description": "Invalid input or state transition"},
    404: {"model": ErrorResponse, "description": "Order not found"},
    409: {"model": ErrorResponse, "description": "Another operation is in flight for the order"},
    412: {"model": ErrorResponse, "description": "No reference transaction on record"},
    500: {"model": ErrorResponse, "description": "Order needs reconciliation"},
    503: {"model": ErrorResponse, "description": "Storage unavailable"},
    504: {"model": ErrorResponse, "description": "Gateway unreachable or timed out"},
}


@lru_cache()
def get_lifecycle_service() -> OrderLifecycleService:
    """Lifecycle service shared by all requests (overridable in tests)."""
    return build_lifecycle_service()


@lru_cache()
def get_health_check() -> HealthCheck:
    return HealthCheck()


def to_response(order: PaymentOrder) -> PaymentResponse:
    return PaymentResponse(
        order_id=order.id,
        status=order.status,
        amount=order.amount,
        currency=order.currency,
    )


@payment_router.post(
    "/purchase",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Purchase",
    description="Create an order and authorize + capture it in one step",
)
async def purchase(
    request: PurchaseRequest,
    service: OrderLifecycleService = Depends(get_lifecycle_service),
) -> PaymentResponse:
    logger.info("api_purchase_request", amount=str(request.amount), currency=request.currency)
    order = await service.purchase(request.amount, request.currency)
    logger.info("api_purchase_completed", order_id=str(order.id), status=order.status.value)
    return to_response(order)


@payment_router.post(
    "/authorize",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Authorize",
    description="Create an order and place a hold for its amount",
)
async def authorize(
    request: PurchaseRequest,
    service: OrderLifecycleService = Depends(get_lifecycle_service),
) -> PaymentResponse:
    logger.info("api_authorize_request", amount=str(request.amount), currency=request.currency)
    order = await service.authorize(request.amount, request.currency)
    logger.info("api_authorize_completed", order_id=str(order.id), status=order.status.value)
    return to_response(order)


@payment_router.post(
    "/{order_id}/capture",
    response_model=PaymentResponse,
    responses=ERROR_RESPONSES,
    summary="Capture",
    description="Settle an authorized order",
)
async def capture(
    order_id: UUID,
    service: OrderLifecycleService = Depends(get_lifecycle_service),
) -> PaymentResponse:
    order = await service.capture(order_id)
    logger.info("api_capture_completed", order_id=str(order_id), status=order.status.value)
    return to_response(order)


@payment_router.post(
    "/{order_id}/cancel",
    response_model=PaymentResponse,
    responses=ERROR_RESPONSES,
    summary="Cancel",
    description="Void an authorized order before capture",
)
async def cancel(
    order_id: UUID,
    service: OrderLifecycleService = Depends(get_lifecycle_service),
) -> PaymentResponse:
    order = await service.cancel(order_id)
    logger.info("api_cancel_completed", order_id=str(order_id), status=order.status.value)
    return to_response(order)


@payment_router.post(
    "/{order_id}/refund",
    response_model=PaymentResponse,
    responses=ERROR_RESPONSES,
    summary="Refund",
    description="Refund part or all of a captured order",
)
async def refund(
    order_id: UUID,
    request: RefundRequest,
    service: OrderLifecycleService = Depends(get_lifecycle_service),
) -> PaymentResponse:
    logger.info("api_refund_request", order_id=str(order_id), amount=str(request.amount))
    order = await service.refund(order_id, request.amount)
    logger.info("api_refund_completed", order_id=str(order_id), status=order.status.value)
    return to_response(order)


@payment_router.get(
    "/{order_id}",
    response_model=PaymentResponse,
    responses=ERROR_RESPONSES,
    summary="Get order",
    description="Retrieve the current status of an order",
)
async def get_order(
    order_id: UUID,
    service: OrderLifecycleService = Depends(get_lifecycle_service),
) -> PaymentResponse:
    return to_response(await service.get_order(order_id))


@payment_router.get(
    "/{order_id}/transactions",
    response_model=TransactionListResponse,
    responses=ERROR_RESPONSES,
    summary="List transactions",
    description="Ledger entries of an order, oldest first",
)
async def list_transactions(
    order_id: UUID,
    service: OrderLifecycleService = Depends(get_lifecycle_service),
) -> TransactionListResponse:
    transactions = await service.list_transactions(order_id)
    return TransactionListResponse(
        order_id=order_id,
        transactions=[TransactionResponse.model_validate(txn) for txn in transactions],
    )


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness check",
    description="Kubernetes liveness endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness check",
    description="Kubernetes readiness endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

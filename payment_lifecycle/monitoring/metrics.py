"""
Prometheus metrics for payment lifecycle monitoring.

Tracks:
- Lifecycle operations by action and result
- Gateway calls by action and outcome, and their duration
- Order lock conflicts and hold time
- Orders needing reconciliation
- Gateway circuit breaker state
"""
from prometheus_client import Counter, Gauge, Histogram

# Lifecycle metrics
lifecycle_operations_total = Counter(
    "payment_lifecycle_operations_total",
    "Total lifecycle operations",
    ["action", "result"],  # result: resulting order status or error code
)

lifecycle_operation_duration_seconds = Histogram(
    "payment_lifecycle_operation_duration_seconds",
    "Lifecycle operation duration in seconds",
    ["action"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

# Gateway metrics
gateway_requests_total = Counter(
    "payment_gateway_requests_total",
    "Total gateway calls",
    ["action", "outcome"],  # outcome: success, declined, transport_failure
)

gateway_duration_seconds = Histogram(
    "payment_gateway_duration_seconds",
    "Gateway call duration in seconds",
    ["action"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

gateway_circuit_breaker_state = Gauge(
    "payment_gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Lock metrics
order_lock_acquisitions_total = Counter(
    "payment_order_lock_acquisitions_total",
    "Total order lock acquisitions",
    ["status"],  # acquired, conflict
)

order_lock_held_seconds = Histogram(
    "payment_order_lock_held_seconds",
    "Order lock hold duration in seconds",
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0),
)

# Reconciliation metrics
reconciliation_required_total = Counter(
    "payment_reconciliation_required_total",
    "Gateway actions whose local record failed to update",
    ["action"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_operation(action: str, result: str, duration_seconds: float) -> None:
        """Record a finished lifecycle operation."""
        lifecycle_operations_total.labels(action=action, result=result).inc()
        lifecycle_operation_duration_seconds.labels(action=action).observe(duration_seconds)

    @staticmethod
    def record_gateway_call(action: str, outcome: str, duration_seconds: float) -> None:
        """Record a gateway call."""
        gateway_requests_total.labels(action=action, outcome=outcome).inc()
        gateway_duration_seconds.labels(action=action).observe(duration_seconds)

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_order_lock(status: str) -> None:
        """Record an order lock acquisition attempt."""
        order_lock_acquisitions_total.labels(status=status).inc()

    @staticmethod
    def record_order_lock_held(duration_seconds: float) -> None:
        order_lock_held_seconds.observe(duration_seconds)

    @staticmethod
    def record_reconciliation_required(action: str) -> None:
        reconciliation_required_total.labels(action=action).inc()


# Export singleton instance
metrics = MetricsCollector()

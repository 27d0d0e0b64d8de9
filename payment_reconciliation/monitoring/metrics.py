"""
Prometheus metrics for payment reconciliation.

Tracks:
- Gateway API calls by gateway, operation and outcome
- Gateway errors and circuit breaker state
- Gateway orders created
- Verification / capture outcomes
- Refund outcomes and refunded amounts
"""
from decimal import Decimal

from prometheus_client import Counter, Gauge, Histogram

# Gateway API metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway API requests",
    ["gateway", "operation", "status"],
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total payment gateway API errors",
    ["gateway", "error_type"],  # transient, permanent, rate_limit
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Payment gateway call duration in seconds",
    ["gateway", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["gateway"],
)

# Payment lifecycle metrics
gateway_orders_created_total = Counter(
    "gateway_orders_created_total",
    "Total gateway orders created",
    ["gateway", "currency"],
)

payment_confirmations_total = Counter(
    "payment_confirmations_total",
    "Total verify/capture attempts by outcome",
    ["method", "result"],  # completed, failed, invalid_signature, underpaid, duplicate, conflict
)

# Refund metrics
refunds_total = Counter(
    "refunds_total",
    "Total refund operations",
    ["method", "status"],  # refunded, partially_refunded, failed
)

refund_amount = Histogram(
    "refund_amount",
    "Refunded amounts in major currency units",
    ["currency"],
    buckets=(1, 10, 50, 100, 500, 1000, 5000, 10000, 50000, 100000),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_gateway_call(
        gateway: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record a gateway API call."""
        gateway_requests_total.labels(gateway=gateway, operation=operation, status=status).inc()
        gateway_duration_seconds.labels(gateway=gateway, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_gateway_error(gateway: str, error_type: str) -> None:
        """Record a classified gateway error."""
        gateway_errors_total.labels(gateway=gateway, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(gateway: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.labels(gateway=gateway).set(state_map.get(state, 0))

    @staticmethod
    def record_gateway_order(gateway: str, currency: str) -> None:
        """Record a gateway order creation."""
        gateway_orders_created_total.labels(gateway=gateway, currency=currency).inc()

    @staticmethod
    def record_confirmation(method: str, result: str) -> None:
        """Record the outcome of a verify or capture."""
        payment_confirmations_total.labels(method=method, result=result).inc()

    @staticmethod
    def record_refund(method: str, status: str, amount: Decimal, currency: str) -> None:
        """Record a refund outcome."""
        refunds_total.labels(method=method, status=status).inc()
        if status != "failed":
            refund_amount.labels(currency=currency).observe(float(amount))


# Export singleton instance
metrics = MetricsCollector()

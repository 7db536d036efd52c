"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Reservation metrics
reservation_attempts = Counter(
    'reservation_attempts_total',
    'Total reservation attempts',
    ['status']  # success, conflict, not_found, error
)

reservation_latency = Histogram(
    'reservation_latency_seconds',
    'Reservation request latency (lock wait included)',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5]
)

# Reconciliation metrics
reconciliation_outcomes = Counter(
    'reconciliation_outcomes_total',
    'Payment reconciliation outcomes',
    ['source', 'outcome']  # source: webhook, recovery_sweep, manual, checkout_verification
)

pending_transactions_checked = Counter(
    'recovery_sweep_transactions_checked_total',
    'Pending transactions polled by the recovery sweep'
)

gateway_calls = Counter(
    'gateway_calls_total',
    'Outgoing payment gateway calls',
    ['gateway', 'operation', 'result']  # result: ok, error
)

gateway_latency = Histogram(
    'gateway_call_latency_seconds',
    'Payment gateway call latency',
    ['gateway'],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Expiry metrics
bookings_released = Counter(
    'bookings_released_total',
    'Reservations moved to completed',
    ['reason']  # expired, vacated, cancelled
)

# Cache metrics
cache_operations = Counter(
    'cache_operations_total',
    'Cache operations',
    ['operation', 'result']  # get/set, hit/miss
)

# Lock metrics
lock_fallbacks = Counter(
    'reservation_lock_fallbacks_total',
    'Times the distributed lock failed open to the in-process lock'
)

redis_circuit_breaker_open = Gauge(
    'redis_circuit_breaker_open',
    'Redis circuit breaker state (1=open, 0=closed)'
)


def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Usage:
        @app.get("/metrics")
        def metrics():
            return metrics_endpoint()
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def record_reservation_attempt(status: str):
    """Record reservation attempt. Status: success, conflict, not_found, error"""
    reservation_attempts.labels(status=status).inc()


def record_reconciliation(source: str, outcome: str):
    reconciliation_outcomes.labels(source=source, outcome=outcome).inc()


def record_gateway_call(gateway: str, operation: str, ok: bool):
    gateway_calls.labels(gateway=gateway, operation=operation, result="ok" if ok else "error").inc()


def record_release(reason: str, count: int = 1):
    if count:
        bookings_released.labels(reason=reason).inc(count)


def record_cache_operation(operation: str, hit: bool):
    """Record cache operation."""
    result = "hit" if hit else "miss"
    cache_operations.labels(operation=operation, result=result).inc()

"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

# Lifecycle metrics
reservation_operations = Counter(
    'reservation_operations_total',
    'Reservation lifecycle operations',
    ['operation', 'result']  # create/update/status/cancel, success/<error_code>
)

status_transitions = Counter(
    'reservation_status_transitions_total',
    'Applied reservation status transitions',
    ['from_status', 'to_status']
)

scheduling_conflicts = Counter(
    'reservation_scheduling_conflicts_total',
    'Rejected requests due to an overlapping active reservation'
)

# Store metrics
store_operations = Counter(
    'reservation_store_operations_total',
    'Reservation store operations',
    ['operation']  # insert, find, count, update, retry
)

store_errors = Counter(
    'reservation_store_errors_total',
    'Reservation store failures surfaced as StoreUnavailable',
    ['operation']
)

store_latency = Histogram(
    'reservation_store_latency_seconds',
    'Reservation store call latency',
    ['operation'],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0]
)

# Cache metrics
cache_operations = Counter(
    'cache_operations_total',
    'Cache operations',
    ['operation', 'result']  # get/set, hit/miss
)


def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


def record_operation(operation: str, result: str = "success"):
    """Record a lifecycle operation outcome. Result: success or an error code."""
    reservation_operations.labels(operation=operation, result=result).inc()


def record_transition(from_status: str, to_status: str):
    status_transitions.labels(from_status=from_status, to_status=to_status).inc()


def record_store_operation(operation: str):
    """Record store operation. Operation: insert, find, count, update, retry"""
    store_operations.labels(operation=operation).inc()


def record_cache_operation(operation: str, hit: bool):
    """Record cache operation."""
    result = "hit" if hit else "miss"
    cache_operations.labels(operation=operation, result=result).inc()

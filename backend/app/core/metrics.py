"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Seat hold metrics
seat_hold_attempts = Counter(
    'seat_hold_attempts_total',
    'Seat hold acquisition attempts',
    ['result']  # acquired, extended, conflict
)

seat_hold_releases = Counter(
    'seat_hold_releases_total',
    'Seat holds released',
    ['reason']  # user, finalized, swept
)

# Booking metrics
booking_attempts = Counter(
    'booking_attempts_total',
    'Total booking creation attempts',
    ['status']  # success, conflict, error
)

booking_finalizations = Counter(
    'booking_finalizations_total',
    'Booking terminal transitions',
    ['result']  # confirmed, cancelled, duplicate, rejected
)

pending_bookings_swept = Counter(
    'pending_bookings_swept_total',
    'Abandoned pending bookings cancelled by the sweeper'
)

# Payment metrics
payment_initiations = Counter(
    'payment_initiations_total',
    'STK push initiations',
    ['result']  # sent, demo, failed
)

payment_callbacks = Counter(
    'payment_callbacks_total',
    'Gateway callbacks received',
    ['result']  # applied, duplicate, invalid, unknown, rejected
)

payment_status_polls = Counter(
    'payment_status_polls_total',
    'Client-initiated payment status polls',
    ['status']  # completed, failed, cancelled, pending
)

gateway_latency = Histogram(
    'mpesa_gateway_latency_seconds',
    'M-Pesa gateway request latency',
    ['operation'],  # token, stk_push, stk_query
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0]
)

# Change feed
change_feed_subscribers = Gauge(
    'change_feed_subscribers',
    'Current change feed subscribers'
)

# Cache metrics
cache_operations = Counter(
    'cache_operations_total',
    'Cache operations',
    ['operation', 'result']  # get/set, hit/miss
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


# Convenience functions for instrumentation
def record_hold_attempt(result: str):
    """Record seat hold attempt. Result: acquired, extended, conflict"""
    seat_hold_attempts.labels(result=result).inc()


def record_hold_release(reason: str):
    seat_hold_releases.labels(reason=reason).inc()


def record_booking_attempt(status: str):
    """Record booking attempt. Status: success, conflict, error"""
    booking_attempts.labels(status=status).inc()


def record_finalization(result: str):
    booking_finalizations.labels(result=result).inc()


def record_payment_initiation(result: str):
    payment_initiations.labels(result=result).inc()


def record_callback(result: str):
    payment_callbacks.labels(result=result).inc()


def record_status_poll(status: str):
    payment_status_polls.labels(status=status).inc()


def record_cache_operation(operation: str, hit: bool):
    """Record cache operation."""
    result = "hit" if hit else "miss"
    cache_operations.labels(operation=operation, result=result).inc()

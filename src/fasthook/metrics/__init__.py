"""FastHook Prometheus metrics."""

from fasthook.metrics.definitions import (
    DELIVERIES_ENQUEUED_TOTAL,
    DISPATCH_QUEUE_DROPPED_TOTAL,
    DISPATCH_QUEUE_SIZE,
    EVENTS_DISPATCHED_TOTAL,
    QUEUE_DEPTH,
    REQUEST_DURATION,
    REQUEST_TOTAL,
    WEBHOOK_DELIVERIES_TOTAL,
    WEBHOOK_DELIVERY_DURATION,
)
from fasthook.metrics.middleware import MetricsMiddleware

__all__ = [
    "DELIVERIES_ENQUEUED_TOTAL",
    "DISPATCH_QUEUE_DROPPED_TOTAL",
    "DISPATCH_QUEUE_SIZE",
    "EVENTS_DISPATCHED_TOTAL",
    "MetricsMiddleware",
    "QUEUE_DEPTH",
    "REQUEST_DURATION",
    "REQUEST_TOTAL",
    "WEBHOOK_DELIVERIES_TOTAL",
    "WEBHOOK_DELIVERY_DURATION",
]

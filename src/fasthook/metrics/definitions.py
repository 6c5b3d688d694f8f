"""Prometheus metrics definitions for FastHook."""

from prometheus_client import Counter, Gauge, Histogram

# HTTP Request metrics
REQUEST_TOTAL = Counter(
    "fasthook_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "fasthook_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Webhook delivery metrics
WEBHOOK_DELIVERIES_TOTAL = Counter(
    "fasthook_webhook_deliveries_total",
    "Webhook delivery attempts by outcome",
    ["status"],  # success, retry, dead
)

WEBHOOK_DELIVERY_DURATION = Histogram(
    "fasthook_webhook_delivery_duration_seconds",
    "Webhook delivery request duration in seconds",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Dispatcher metrics
EVENTS_DISPATCHED_TOTAL = Counter(
    "fasthook_events_dispatched_total",
    "Domain events turned into deliveries",
    ["event"],
)

DELIVERIES_ENQUEUED_TOTAL = Counter(
    "fasthook_deliveries_enqueued_total",
    "Delivery rows created by the dispatcher",
    ["result"],  # created, error
)

DISPATCH_QUEUE_DROPPED_TOTAL = Counter(
    "fasthook_dispatch_queue_dropped_total",
    "Events dropped because the dispatch queue was full",
)

DISPATCH_QUEUE_SIZE = Gauge(
    "fasthook_dispatch_queue_size",
    "Events waiting in the in-memory dispatch queue",
)

# Queue metrics
QUEUE_DEPTH = Gauge(
    "fasthook_delivery_status",
    "Number of stored webhook deliveries by status",
    ["status"],  # pending, success, dead
)

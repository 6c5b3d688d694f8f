"""Webhook dispatch and delivery."""

from fasthook.webhook.dispatcher import EventDispatcher, build_envelope
from fasthook.webhook.queue import (
    DeliveryNotRetryableError,
    compute_next_retry,
    compute_retry_delay,
    create_delivery,
    find_active_endpoints,
    find_endpoint_by_id,
    get_status_counts,
    list_deliveries,
    list_pending_deliveries,
    mark_dead,
    mark_delivered,
    mark_failed,
    record_delivery_outcome,
    retry_delivery,
)
from fasthook.webhook.signing import (
    build_delivery_headers,
    compute_signature,
    signature_header,
    verify_signature,
)
from fasthook.webhook.url_validator import (
    UnsafeURLError,
    validate_webhook_url,
)
from fasthook.webhook.worker import WebhookWorker, process_delivery, send_webhook

__all__ = [
    "DeliveryNotRetryableError",
    "EventDispatcher",
    "UnsafeURLError",
    "WebhookWorker",
    "build_delivery_headers",
    "build_envelope",
    "compute_next_retry",
    "compute_retry_delay",
    "compute_signature",
    "create_delivery",
    "find_active_endpoints",
    "find_endpoint_by_id",
    "get_status_counts",
    "list_deliveries",
    "list_pending_deliveries",
    "mark_dead",
    "mark_delivered",
    "mark_failed",
    "process_delivery",
    "record_delivery_outcome",
    "retry_delivery",
    "send_webhook",
    "signature_header",
    "validate_webhook_url",
    "verify_signature",
]

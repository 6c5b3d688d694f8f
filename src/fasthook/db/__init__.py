"""Database module."""

from fasthook.db.enums import DeliveryStatus, WebhookEvent
from fasthook.db.models import Base, WebhookDelivery, WebhookEndpoint
from fasthook.db.session import async_session, get_async_session_factory, get_session

__all__ = [
    "Base",
    "DeliveryStatus",
    "WebhookDelivery",
    "WebhookEndpoint",
    "WebhookEvent",
    "async_session",
    "get_async_session_factory",
    "get_session",
]

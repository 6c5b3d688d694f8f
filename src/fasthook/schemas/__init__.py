"""Pydantic schemas for the management API."""

from fasthook.schemas.common import (
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    QueueStats,
    ReadyResponse,
)
from fasthook.schemas.webhook import (
    DeliveryDetailResponse,
    DeliveryListResponse,
    DeliveryResponse,
    EndpointCreate,
    EndpointCreatedResponse,
    EndpointResponse,
    EndpointUpdate,
    EventAccepted,
    EventPublish,
)

__all__ = [
    "DeliveryDetailResponse",
    "DeliveryListResponse",
    "DeliveryResponse",
    "EndpointCreate",
    "EndpointCreatedResponse",
    "EndpointResponse",
    "EndpointUpdate",
    "ErrorResponse",
    "EventAccepted",
    "EventPublish",
    "HealthResponse",
    "MessageResponse",
    "QueueStats",
    "ReadyResponse",
]

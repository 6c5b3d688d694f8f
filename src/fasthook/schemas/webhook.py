"""Webhook endpoint, delivery and event Pydantic schemas."""

import json
import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, computed_field, field_validator

from fasthook.db.enums import DeliveryStatus, WebhookEvent


def _check_events(events: list[str]) -> list[str]:
    allowed = WebhookEvent.values()
    for event in events:
        if event not in allowed:
            raise ValueError(f"Invalid event: {event}")
    return events


class EndpointCreate(BaseModel):
    """Schema for registering an endpoint."""

    url: HttpUrl
    events: list[str] = Field(..., min_length=1, description="Event types to subscribe to")

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: list[str]) -> list[str]:
        return _check_events(v)


class EndpointUpdate(BaseModel):
    """Schema for updating an endpoint. The signing secret cannot be changed."""

    url: HttpUrl | None = None
    events: list[str] | None = Field(None, min_length=1)
    is_active: bool | None = None

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return v
        return _check_events(v)


class EndpointResponse(BaseModel):
    """Schema for endpoint response. Never includes the secret."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    owner_id: str
    url: str
    events: list[str]
    is_active: bool
    created_at: datetime
    updated_at: datetime


class EndpointCreatedResponse(EndpointResponse):
    """Returned once, at creation: the only time the secret is exposed."""

    secret: str


class DeliveryResponse(BaseModel):
    """Schema for delivery response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    endpoint_id: uuid.UUID
    event_type: str
    status: DeliveryStatus
    attempts: int
    max_attempts: int
    response_status: int | None
    response_body: str | None
    next_retry_at: datetime | None
    delivered_at: datetime | None
    created_at: datetime
    updated_at: datetime


class DeliveryDetailResponse(DeliveryResponse):
    """Schema for delivery response with the envelope that was sent."""

    payload: bytes = Field(exclude=True)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def envelope(self) -> Any:
        try:
            return json.loads(self.payload)
        except ValueError:
            return self.payload.decode("utf-8", errors="replace")


class DeliveryListResponse(BaseModel):
    """Page of deliveries for an endpoint."""

    deliveries: list[DeliveryResponse]
    total: int


class EventPublish(BaseModel):
    """Schema for publishing a domain event."""

    event: WebhookEvent
    data: dict[str, Any] = Field(default_factory=dict)


class EventAccepted(BaseModel):
    """Response for an accepted event."""

    queued: bool = True
    event: str

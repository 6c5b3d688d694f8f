"""Common Pydantic schemas."""

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str
    instance_id: str


class QueueStats(BaseModel):
    """Delivery counts by status."""

    pending: int = 0
    success: int = 0
    dead: int = 0


class ReadyResponse(BaseModel):
    """Readiness check response."""

    status: str = "ok"
    database: str = "ok"
    dispatch_queue: int | None = None  # Events waiting in the in-memory queue
    queue: QueueStats | None = None  # Optional delivery statistics


class MessageResponse(BaseModel):
    """Generic message response."""

    message: str


class ErrorResponse(BaseModel):
    """Error response."""

    detail: str

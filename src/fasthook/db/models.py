"""SQLAlchemy database models."""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from fasthook.db.enums import DeliveryStatus


class Base(DeclarativeBase):
    """Base class for all models."""

    # Use JSON with JSONB variant for PostgreSQL (works on SQLite too)
    type_annotation_map = {
        dict: JSON().with_variant(JSONB(), "postgresql"),
        list[str]: JSON().with_variant(JSONB(), "postgresql"),
        uuid.UUID: Uuid,
    }


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class WebhookEndpoint(Base, TimestampMixin):
    """A third-party URL registered by an owner to receive events."""

    __tablename__ = "webhook_endpoints"

    id: Mapped[uuid.UUID] = mapped_column(
        primary_key=True,
        default=uuid.uuid4,
    )
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    # Encrypted at rest when an encryption key is configured; never updated.
    secret: Mapped[str] = mapped_column(Text, nullable=False)
    events: Mapped[list[str]] = mapped_column(default=list)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)

    __table_args__ = (Index("ix_webhook_endpoints_owner_active", "owner_id", "is_active"),)

    def subscribes_to(self, event_type: str) -> bool:
        return event_type in (self.events or [])

    def __repr__(self) -> str:
        return f"<WebhookEndpoint {self.id} owner={self.owner_id}>"


class WebhookDelivery(Base, TimestampMixin):
    """One event that must reach one endpoint, with its attempt history."""

    __tablename__ = "webhook_deliveries"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    # No foreign key: deliveries are kept for audit after the endpoint is deleted.
    endpoint_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=DeliveryStatus.PENDING.value, nullable=False, index=True
    )  # pending, success, dead
    attempts: Mapped[int] = mapped_column(default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(default=5, nullable=False)
    response_status: Mapped[int | None] = mapped_column(nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_webhook_deliveries_status_retry", "status", "next_retry_at"),
        Index("ix_webhook_deliveries_endpoint_created", "endpoint_id", "created_at"),
    )

    @property
    def is_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def __repr__(self) -> str:
        return f"<WebhookDelivery {self.id} {self.event_type} status={self.status}>"

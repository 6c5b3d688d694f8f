"""Database enum types for consistent status and event values."""

from enum import Enum


class DeliveryStatus(str, Enum):
    """Status values for webhook deliveries."""

    PENDING = "pending"
    SUCCESS = "success"
    DEAD = "dead"

    @property
    def is_terminal(self) -> bool:
        return self is not DeliveryStatus.PENDING


class WebhookEvent(str, Enum):
    """Event types endpoints can subscribe to."""

    LICENSE_SOLD = "license.sold"
    CONTENT_UPLOADED = "content.uploaded"
    PROFILE_VIEWED = "profile.viewed"
    COLLABORATION_RECEIVED = "collaboration.received"
    PAYOUT_COMPLETED = "payout.completed"

    @classmethod
    def values(cls) -> set[str]:
        return {member.value for member in cls}

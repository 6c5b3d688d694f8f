"""Database-backed webhook delivery queue."""

import logging
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fasthook.config import Settings, get_settings
from fasthook.db.enums import DeliveryStatus
from fasthook.db.models import WebhookDelivery, WebhookEndpoint

logger = logging.getLogger(__name__)

DEFAULT_RETRY_SCHEDULE: tuple[int, ...] = (30, 120, 600, 1800, 7200)
RESPONSE_BODY_LIMIT = 1024


class DeliveryNotRetryableError(Exception):
    """Raised when a manual retry is requested for a delivered webhook."""


def compute_retry_delay(
    attempts: int,
    schedule: Sequence[int] = DEFAULT_RETRY_SCHEDULE,
) -> timedelta:
    """Return the wait before the next attempt.

    ``attempts`` is the number of attempts already made before the failure
    being scheduled, so the first failure waits ``schedule[0]``. Indexes past
    the end of the schedule reuse the last entry.
    """
    index = min(max(attempts, 0), len(schedule) - 1)
    return timedelta(seconds=schedule[index])


def compute_next_retry(
    attempts: int,
    now: datetime | None = None,
    schedule: Sequence[int] = DEFAULT_RETRY_SCHEDULE,
) -> datetime:
    """Return when a delivery that just failed becomes due again."""
    now = now or datetime.now(UTC)
    return now + compute_retry_delay(attempts, schedule)


def truncate_body(body: str | None, limit: int = RESPONSE_BODY_LIMIT) -> str | None:
    if body is None:
        return None
    return body[:limit]


async def find_active_endpoints(
    session: AsyncSession,
    owner_id: str,
    event_type: str,
) -> list[WebhookEndpoint]:
    """Find the owner's active endpoints subscribed to an event type.

    Subscription matching happens in Python so the query stays portable
    between the PostgreSQL JSONB and SQLite JSON column types.
    """
    stmt = (
        select(WebhookEndpoint)
        .where(
            WebhookEndpoint.owner_id == owner_id,
            WebhookEndpoint.is_active.is_(True),
        )
        .order_by(WebhookEndpoint.created_at)
    )
    result = await session.execute(stmt)
    return [ep for ep in result.scalars().all() if ep.subscribes_to(event_type)]


async def find_endpoint_by_id(
    session: AsyncSession,
    endpoint_id: uuid.UUID,
) -> WebhookEndpoint | None:
    """Look up an endpoint, returning None if it was deleted."""
    stmt = select(WebhookEndpoint).where(WebhookEndpoint.id == endpoint_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def create_delivery(
    session: AsyncSession,
    endpoint_id: uuid.UUID,
    event_type: str,
    payload: bytes,
    max_attempts: int | None = None,
) -> WebhookDelivery:
    """Persist a new delivery, eligible for its first attempt immediately.

    Args:
        session: Database session
        endpoint_id: Endpoint the event must reach
        event_type: Event type, e.g. ``license.sold``
        payload: Serialized envelope; stored as-is and never modified
        max_attempts: Attempt budget (defaults to ``webhook_max_attempts``)

    Returns:
        Created WebhookDelivery
    """
    if max_attempts is None:
        max_attempts = get_settings().webhook_max_attempts

    delivery = WebhookDelivery(
        endpoint_id=endpoint_id,
        event_type=event_type,
        payload=payload,
        status=DeliveryStatus.PENDING.value,
        attempts=0,
        max_attempts=max_attempts,
        next_retry_at=None,
    )
    session.add(delivery)
    await session.flush()
    await session.refresh(delivery)

    logger.debug(f"Enqueued delivery {delivery.id} ({event_type}) for endpoint {endpoint_id}")
    return delivery


async def list_pending_deliveries(
    session: AsyncSession,
    limit: int = 10,
    now: datetime | None = None,
) -> list[WebhookDelivery]:
    """Get pending deliveries that are due, oldest first.

    A delivery is due when it has never been attempted (``next_retry_at`` is
    NULL) or its retry time has passed. Rows are not claimed; a single worker
    instance is assumed.
    """
    now = now or datetime.now(UTC)
    stmt = (
        select(WebhookDelivery)
        .where(
            WebhookDelivery.status == DeliveryStatus.PENDING.value,
            or_(
                WebhookDelivery.next_retry_at.is_(None),
                WebhookDelivery.next_retry_at <= now,
            ),
        )
        .order_by(WebhookDelivery.created_at, WebhookDelivery.id)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def record_delivery_outcome(
    session: AsyncSession,
    delivery_id: int,
    status: DeliveryStatus,
    response_status: int | None,
    response_body: str | None,
    next_retry_at: datetime | None = None,
    increment_attempts: bool = True,
    body_limit: int = RESPONSE_BODY_LIMIT,
) -> None:
    """Write the result of an attempt.

    This is the only place attempt metadata changes. The payload column is
    never part of the update. ``attempts`` is incremented in SQL so the
    counter cannot move backwards.
    """
    now = datetime.now(UTC)
    values: dict = {
        "status": status.value,
        "response_status": response_status,
        "response_body": truncate_body(response_body, body_limit),
        "next_retry_at": next_retry_at if status == DeliveryStatus.PENDING else None,
        "updated_at": now,  # Explicit update since onupdate doesn't trigger
    }
    if increment_attempts:
        values["attempts"] = WebhookDelivery.attempts + 1
    if status == DeliveryStatus.SUCCESS:
        values["delivered_at"] = now

    stmt = update(WebhookDelivery).where(WebhookDelivery.id == delivery_id).values(**values)
    await session.execute(stmt)
    await session.flush()


async def mark_delivered(
    session: AsyncSession,
    delivery: WebhookDelivery,
    response_status: int,
    response_body: str | None,
    settings: Settings | None = None,
) -> DeliveryStatus:
    """Mark a delivery as successfully delivered.

    A successful attempt counts towards ``attempts`` like any other.
    """
    settings = settings or get_settings()
    await record_delivery_outcome(
        session,
        delivery.id,
        DeliveryStatus.SUCCESS,
        response_status,
        response_body,
        body_limit=settings.webhook_response_body_limit,
    )
    logger.info(f"Delivery {delivery.id} delivered (attempt {delivery.attempts + 1})")
    return DeliveryStatus.SUCCESS


async def mark_failed(
    session: AsyncSession,
    delivery: WebhookDelivery,
    response_status: int | None,
    response_body: str | None,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> DeliveryStatus:
    """Record a failed attempt and schedule a retry or give up.

    Returns:
        PENDING if another attempt was scheduled, DEAD if the budget is spent
    """
    settings = settings or get_settings()
    new_attempts = delivery.attempts + 1

    if new_attempts >= delivery.max_attempts:
        await record_delivery_outcome(
            session,
            delivery.id,
            DeliveryStatus.DEAD,
            response_status,
            response_body,
            body_limit=settings.webhook_response_body_limit,
        )
        logger.warning(f"Delivery {delivery.id} dead after {new_attempts} attempts")
        return DeliveryStatus.DEAD

    next_retry = compute_next_retry(delivery.attempts, now, settings.webhook_retry_schedule)
    await record_delivery_outcome(
        session,
        delivery.id,
        DeliveryStatus.PENDING,
        response_status,
        response_body,
        next_retry_at=next_retry,
        body_limit=settings.webhook_response_body_limit,
    )
    logger.info(
        f"Delivery {delivery.id} failed (attempt {new_attempts}), next retry at {next_retry}"
    )
    return DeliveryStatus.PENDING


async def mark_dead(
    session: AsyncSession,
    delivery: WebhookDelivery,
    reason: str,
) -> DeliveryStatus:
    """Mark a delivery dead without counting an attempt (no request was made)."""
    await record_delivery_outcome(
        session,
        delivery.id,
        DeliveryStatus.DEAD,
        response_status=None,
        response_body=reason,
        increment_attempts=False,
    )
    logger.warning(f"Delivery {delivery.id} marked dead: {reason}")
    return DeliveryStatus.DEAD


async def get_delivery(
    session: AsyncSession,
    delivery_id: int,
) -> WebhookDelivery | None:
    stmt = select(WebhookDelivery).where(WebhookDelivery.id == delivery_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_deliveries(
    session: AsyncSession,
    endpoint_id: uuid.UUID,
    limit: int = 20,
    offset: int = 0,
    status: DeliveryStatus | None = None,
) -> tuple[list[WebhookDelivery], int]:
    """List an endpoint's deliveries, newest first.

    Returns:
        Tuple of (page of deliveries, total matching count)
    """
    conditions = [WebhookDelivery.endpoint_id == endpoint_id]
    if status is not None:
        conditions.append(WebhookDelivery.status == status.value)

    count_stmt = select(func.count()).select_from(WebhookDelivery).where(*conditions)
    total = (await session.execute(count_stmt)).scalar() or 0

    stmt = (
        select(WebhookDelivery)
        .where(*conditions)
        .order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id.desc())
        .limit(limit)
        .offset(offset)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all()), total


async def get_status_counts(session: AsyncSession) -> dict[str, int]:
    """Count deliveries per status in a single query."""
    stmt = select(WebhookDelivery.status, func.count(WebhookDelivery.id)).group_by(
        WebhookDelivery.status
    )
    result = await session.execute(stmt)
    counts = {status.value: 0 for status in DeliveryStatus}
    counts.update({row[0]: row[1] for row in result.fetchall()})
    return counts


async def retry_delivery(
    session: AsyncSession,
    delivery_id: int,
    settings: Settings | None = None,
) -> WebhookDelivery | None:
    """Reset a delivery so the worker attempts it on its next poll.

    ``attempts`` is never reset. A dead or exhausted delivery gets a fresh
    budget of ``webhook_max_attempts`` on top of the attempts already made.

    Returns:
        Updated WebhookDelivery or None if not found

    Raises:
        DeliveryNotRetryableError: If the delivery already succeeded
    """
    settings = settings or get_settings()
    delivery = await get_delivery(session, delivery_id)
    if not delivery:
        return None

    if delivery.status == DeliveryStatus.SUCCESS.value:
        raise DeliveryNotRetryableError(f"Delivery {delivery_id} was already delivered")

    values: dict = {
        "status": DeliveryStatus.PENDING.value,
        "next_retry_at": None,
        "updated_at": datetime.now(UTC),
    }
    if delivery.status == DeliveryStatus.DEAD.value or delivery.is_exhausted:
        values["max_attempts"] = delivery.attempts + settings.webhook_max_attempts

    stmt = update(WebhookDelivery).where(WebhookDelivery.id == delivery_id).values(**values)
    await session.execute(stmt)
    await session.flush()
    await session.refresh(delivery)

    logger.info(f"Delivery {delivery_id} queued for manual retry")
    return delivery

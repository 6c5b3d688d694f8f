"""Event dispatcher: turns domain events into persisted deliveries."""

import asyncio
import contextlib
import json
import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fasthook.config import Settings, get_settings
from fasthook.db.models import WebhookDelivery
from fasthook.db.session import get_async_session_factory
from fasthook.metrics.definitions import (
    DELIVERIES_ENQUEUED_TOTAL,
    DISPATCH_QUEUE_DROPPED_TOTAL,
    DISPATCH_QUEUE_SIZE,
    EVENTS_DISPATCHED_TOTAL,
)
from fasthook.webhook.queue import create_delivery, find_active_endpoints

logger = logging.getLogger(__name__)


def format_timestamp(moment: datetime) -> str:
    """Format a datetime as RFC 3339 in UTC with a ``Z`` suffix."""
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_envelope(event_type: str, data: Any, now: datetime | None = None) -> bytes:
    """Wrap event data in the envelope receivers get and serialize it once.

    Raises:
        TypeError: If ``data`` is not JSON serializable
    """
    envelope = {
        "event": event_type,
        "timestamp": format_timestamp(now or datetime.now(UTC)),
        "data": data,
    }
    return json.dumps(envelope, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


class EventDispatcher:
    """Creates one delivery per interested endpoint for each event.

    Producers either await :meth:`dispatch` or hand the event off with
    :meth:`submit`, which never blocks and never raises. Submitted events go
    through a bounded in-memory queue drained by a single consumer task, so a
    burst of events cannot spawn unbounded work.

    One instance is created per process and passed to whatever produces
    events (see ``app.state.dispatcher``).
    """

    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self._queue: asyncio.Queue[tuple[str, str, Any]] = asyncio.Queue(
            maxsize=self.settings.dispatch_queue_size
        )
        self._task: asyncio.Task | None = None

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_async_session_factory()
        return self._session_factory

    @property
    def pending_events(self) -> int:
        return self._queue.qsize()

    async def dispatch(
        self,
        owner_id: str,
        event_type: str,
        data: Any,
    ) -> list[WebhookDelivery]:
        """Persist one delivery per active endpoint subscribed to the event.

        No network I/O happens here. Lookup and store errors are logged and swallowed:
        a failure for one endpoint does not stop the others.

        Returns:
            The deliveries that were created (empty if nobody subscribed)
        """
        try:
            async with self.session_factory() as session:
                endpoints = await find_active_endpoints(session, owner_id, event_type)
        except Exception:
            logger.exception(f"Failed to look up endpoints for {event_type} (owner {owner_id})")
            return []

        if not endpoints:
            logger.debug(f"No endpoints subscribed to {event_type} for owner {owner_id}")
            return []

        try:
            payload = build_envelope(event_type, data)
        except (TypeError, ValueError):
            logger.exception(f"Event {event_type} payload is not JSON serializable, dropping")
            return []

        EVENTS_DISPATCHED_TOTAL.labels(event=event_type).inc()

        deliveries: list[WebhookDelivery] = []
        for endpoint in endpoints:
            try:
                async with self.session_factory() as session:
                    delivery = await create_delivery(
                        session,
                        endpoint_id=endpoint.id,
                        event_type=event_type,
                        payload=payload,
                        max_attempts=self.settings.webhook_max_attempts,
                    )
                    await session.commit()
            except Exception:
                DELIVERIES_ENQUEUED_TOTAL.labels(result="error").inc()
                logger.exception(
                    f"Failed to enqueue {event_type} delivery for endpoint {endpoint.id}"
                )
                continue

            DELIVERIES_ENQUEUED_TOTAL.labels(result="created").inc()
            deliveries.append(delivery)

        logger.info(
            f"Dispatched {event_type} for owner {owner_id}: "
            f"{len(deliveries)}/{len(endpoints)} deliveries enqueued"
        )
        return deliveries

    def submit(self, owner_id: str, event_type: str, data: Any) -> bool:
        """Hand an event to the background consumer without waiting.

        Returns:
            False if the queue is full and the event was dropped
        """
        try:
            self._queue.put_nowait((owner_id, event_type, data))
        except asyncio.QueueFull:
            DISPATCH_QUEUE_DROPPED_TOTAL.inc()
            logger.warning(
                f"Dispatch queue full ({self._queue.maxsize}), dropping {event_type} "
                f"for owner {owner_id}"
            )
            return False

        DISPATCH_QUEUE_SIZE.set(self._queue.qsize())
        return True

    async def run(self) -> None:
        """Consume submitted events until cancelled."""
        logger.info("Event dispatcher started")
        try:
            while True:
                owner_id, event_type, data = await self._queue.get()
                try:
                    await self.dispatch(owner_id, event_type, data)
                except Exception:
                    logger.exception(f"Unexpected error dispatching {event_type}")
                finally:
                    self._queue.task_done()
                    DISPATCH_QUEUE_SIZE.set(self._queue.qsize())
        finally:
            logger.info("Event dispatcher stopped")

    def start(self) -> None:
        """Start the consumer task in the background."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def join(self) -> None:
        """Wait until every submitted event has been dispatched."""
        await self._queue.join()

    async def stop(self, drain: bool = True, timeout: float = 10.0) -> None:
        """Stop the consumer task.

        Args:
            drain: Dispatch events already in the queue before stopping
            timeout: Maximum seconds to wait for the queue to drain
        """
        if self._task is None:
            return

        if drain and not self._task.done():
            try:
                await asyncio.wait_for(self._queue.join(), timeout=timeout)
            except TimeoutError:
                logger.warning(
                    f"Dispatch queue not drained in {timeout}s, "
                    f"{self._queue.qsize()} events dropped"
                )

        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

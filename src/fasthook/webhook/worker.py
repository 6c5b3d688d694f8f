"""Webhook delivery worker."""

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass

import httpx
from cryptography.fernet import InvalidToken
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fasthook.config import Settings, get_settings
from fasthook.db.enums import DeliveryStatus
from fasthook.db.models import WebhookDelivery
from fasthook.db.session import get_async_session_factory
from fasthook.metrics.definitions import (
    WEBHOOK_DELIVERIES_TOTAL,
    WEBHOOK_DELIVERY_DURATION,
)
from fasthook.webhook.queue import (
    RESPONSE_BODY_LIMIT,
    find_endpoint_by_id,
    get_delivery,
    list_pending_deliveries,
    mark_dead,
    mark_delivered,
    mark_failed,
)
from fasthook.webhook.registry import get_signing_secret
from fasthook.webhook.signing import build_delivery_headers
from fasthook.webhook.url_validator import UnsafeURLError, create_delivery_client

logger = logging.getLogger(__name__)

_OUTCOME_LABELS = {
    DeliveryStatus.SUCCESS: "success",
    DeliveryStatus.PENDING: "retry",
    DeliveryStatus.DEAD: "dead",
}


@dataclass
class DeliveryResult:
    """Outcome of one HTTP attempt."""

    success: bool
    status_code: int | None
    body: str | None
    duration: float


async def _read_body(response: httpx.Response, limit: int) -> str:
    """Read at most ``limit`` bytes of the response body."""
    received = bytearray()
    async for chunk in response.aiter_bytes():
        received.extend(chunk)
        if len(received) >= limit:
            break
    return bytes(received[:limit]).decode(response.charset_encoding or "utf-8", errors="replace")


async def send_webhook(
    client: httpx.AsyncClient,
    url: str,
    payload: bytes,
    headers: dict[str, str],
    request_timeout: float = 10.0,
    body_limit: int = RESPONSE_BODY_LIMIT,
) -> DeliveryResult:
    """POST a signed payload to a receiver.

    ``request_timeout`` caps the whole attempt, from connecting to reading the
    body, and only the first ``body_limit`` bytes of the response are read.
    Transport errors and non-2xx responses are both reported as failures;
    the body holds the response text or the error description.
    """
    start_time = time.perf_counter()
    try:
        async with asyncio.timeout(request_timeout):
            async with client.stream(
                "POST",
                url,
                content=payload,
                headers=headers,
                timeout=request_timeout,
            ) as response:
                body = await _read_body(response, body_limit)
    except (TimeoutError, httpx.TimeoutException):
        return DeliveryResult(False, None, "Request timed out", time.perf_counter() - start_time)
    except httpx.ConnectError as e:
        return DeliveryResult(
            False, None, f"Connection error: {e}", time.perf_counter() - start_time
        )
    except httpx.HTTPError as e:
        return DeliveryResult(False, None, f"HTTP error: {e}", time.perf_counter() - start_time)
    except UnsafeURLError as e:
        logger.warning(f"Blocked webhook to {url}: {e}")
        return DeliveryResult(False, None, f"URL blocked: {e}", time.perf_counter() - start_time)
    except Exception as e:
        logger.exception(f"Unexpected error sending webhook to {url}")
        return DeliveryResult(
            False, None, f"Unexpected error: {e}", time.perf_counter() - start_time
        )

    duration = time.perf_counter() - start_time
    return DeliveryResult(response.is_success, response.status_code, body, duration)


async def process_delivery(
    delivery: WebhookDelivery,
    session: AsyncSession,
    client: httpx.AsyncClient,
    settings: Settings,
) -> DeliveryStatus:
    """Attempt a single delivery and record the outcome.

    Args:
        delivery: Due pending delivery
        session: Database session used for the endpoint lookup and the update
        client: HTTP client to deliver with
        settings: Application settings

    Returns:
        The delivery status after this attempt
    """
    endpoint = await find_endpoint_by_id(session, delivery.endpoint_id)
    if endpoint is None:
        outcome = await mark_dead(
            session, delivery, f"Endpoint {delivery.endpoint_id} no longer exists"
        )
        WEBHOOK_DELIVERIES_TOTAL.labels(status="dead").inc()
        return outcome

    logger.debug(f"Delivering {delivery.id} ({delivery.event_type}) to {endpoint.url}")

    try:
        secret = get_signing_secret(endpoint, settings)
    except (InvalidToken, ValueError):
        logger.exception(f"Cannot decrypt signing secret of endpoint {endpoint.id}")
        outcome = await mark_failed(
            session, delivery, None, "Signing secret could not be decrypted", settings
        )
        WEBHOOK_DELIVERIES_TOTAL.labels(status=_OUTCOME_LABELS[outcome]).inc()
        return outcome

    headers = build_delivery_headers(delivery.id, delivery.event_type, secret, delivery.payload)
    result = await send_webhook(
        client,
        endpoint.url,
        delivery.payload,
        headers,
        request_timeout=settings.webhook_timeout,
        body_limit=settings.webhook_response_body_limit,
    )
    WEBHOOK_DELIVERY_DURATION.observe(result.duration)

    if result.success:
        outcome = await mark_delivered(
            session, delivery, result.status_code or 200, result.body, settings
        )
    else:
        outcome = await mark_failed(
            session, delivery, result.status_code, result.body, settings
        )

    WEBHOOK_DELIVERIES_TOTAL.labels(status=_OUTCOME_LABELS[outcome]).inc()
    return outcome


class WebhookWorker:
    """Background worker that polls due deliveries and attempts them.

    Deliveries in a batch are attempted one after another unless
    ``worker_concurrency`` is raised, in which case at most that many run at
    once. Only one worker instance should run against a database: rows are
    not leased, so two workers could attempt the same delivery.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self._http_client = http_client
        self._owns_client = http_client is None
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_async_session_factory()
        return self._session_factory

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client shared by all deliveries of this worker."""
        if self._http_client is None:
            self._http_client = create_delivery_client(
                timeout=self.settings.webhook_timeout,
                ssrf_protection=self.settings.webhook_ssrf_protection,
                allowed_internal_domains=self.settings.webhook_allowed_internal_domains,
            )
            self._owns_client = True
        return self._http_client

    async def _close_http_client(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _process_single_delivery(self, delivery_id: int) -> DeliveryStatus | None:
        """Process a single delivery with its own database session."""
        client = await self._get_http_client()
        async with self.session_factory() as session:
            delivery = await get_delivery(session, delivery_id)
            if delivery is None or DeliveryStatus(delivery.status).is_terminal:
                logger.warning(f"Delivery {delivery_id} vanished or changed state, skipping")
                return None

            outcome = await process_delivery(delivery, session, client, self.settings)
            await session.commit()
            return outcome

    async def process_batch(self) -> int:
        """Process a batch of due deliveries.

        Returns:
            Number of deliveries processed
        """
        async with self.session_factory() as session:
            deliveries = await list_pending_deliveries(
                session,
                limit=self.settings.worker_batch_size,
            )
            delivery_ids = [d.id for d in deliveries]

        if not delivery_ids:
            return 0

        logger.debug(f"Processing {len(delivery_ids)} deliveries")

        if self.settings.worker_concurrency <= 1:
            for delivery_id in delivery_ids:
                if self._stop_event.is_set():
                    break
                try:
                    await self._process_single_delivery(delivery_id)
                except Exception:
                    logger.exception(f"Delivery {delivery_id} processing failed")
            return len(delivery_ids)

        semaphore = asyncio.Semaphore(self.settings.worker_concurrency)

        async def bounded(delivery_id: int) -> DeliveryStatus | None:
            async with semaphore:
                return await self._process_single_delivery(delivery_id)

        results = await asyncio.gather(
            *(bounded(delivery_id) for delivery_id in delivery_ids),
            return_exceptions=True,
        )
        for delivery_id, result in zip(delivery_ids, results, strict=True):
            if isinstance(result, Exception):
                logger.error(
                    f"Delivery {delivery_id} processing failed: {result}",
                    exc_info=result,
                )
        return len(delivery_ids)

    async def run(self) -> None:
        """Run the polling loop until stop() is called."""
        self._stop_event.clear()
        logger.info(
            f"Webhook worker started (instance: {self.settings.instance_id}, "
            f"interval: {self.settings.worker_poll_interval}s, "
            f"batch: {self.settings.worker_batch_size})"
        )

        while not self._stop_event.is_set():
            try:
                await self.process_batch()
            except Exception:
                logger.exception("Error in webhook worker loop")

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=self.settings.worker_poll_interval,
                )

        logger.info("Webhook worker stopped")

    def start(self) -> None:
        """Start the worker in the background."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self, timeout: float | None = None) -> None:
        """Stop the worker and clean up resources.

        The delivery in flight is allowed to finish (it is bounded by the
        request timeout). If it has not finished after ``timeout`` seconds the
        task is cancelled and the delivery stays pending for the next run.
        """
        self._stop_event.set()
        if timeout is None:
            timeout = self.settings.webhook_timeout + 5
        if self._task and not self._task.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
            except TimeoutError:
                logger.warning("Webhook worker did not stop in time, cancelling")
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task
        await self._close_http_client()

    async def wait(self) -> None:
        """Wait for the worker to finish."""
        if self._task:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

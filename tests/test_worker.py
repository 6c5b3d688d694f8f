"""Tests for the delivery worker."""

import asyncio
import json
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from conftest import as_utc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fasthook.config import Settings
from fasthook.db.enums import DeliveryStatus
from fasthook.db.models import WebhookDelivery, WebhookEndpoint
from fasthook.webhook.dispatcher import build_envelope
from fasthook.webhook.queue import create_delivery, get_delivery
from fasthook.webhook.registry import delete_endpoint
from fasthook.webhook.signing import verify_signature
from fasthook.webhook.worker import WebhookWorker, process_delivery, send_webhook


class Receiver:
    """Records requests and answers with a fixed status."""

    def __init__(self, status_code: int = 200, body: str = "ok"):
        self.status_code = status_code
        self.body = body
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, text=self.body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


async def _enqueue(
    session: AsyncSession,
    endpoint: WebhookEndpoint,
    **overrides,
) -> WebhookDelivery:
    delivery = await create_delivery(
        session,
        endpoint_id=endpoint.id,
        event_type="license.sold",
        payload=build_envelope("license.sold", {"license_id": "lic_1"}),
        max_attempts=5,
    )
    for field, value in overrides.items():
        setattr(delivery, field, value)
    await session.commit()
    return delivery


class TestSendWebhook:
    """Tests for send_webhook function."""

    @pytest.mark.asyncio
    async def test_success(self):
        receiver = Receiver(204, "")
        async with receiver.client() as client:
            result = await send_webhook(client, "https://r.example.com/h", b"{}", {})

        assert result.success is True
        assert result.status_code == 204
        assert result.duration >= 0

    @pytest.mark.asyncio
    async def test_non_2xx_is_failure(self):
        receiver = Receiver(404, "not here")
        async with receiver.client() as client:
            result = await send_webhook(client, "https://r.example.com/h", b"{}", {})

        assert result.success is False
        assert result.status_code == 404
        assert result.body == "not here"

    @pytest.mark.asyncio
    async def test_redirect_is_failure(self):
        """3xx is not followed and does not count as delivered."""
        receiver = Receiver(302, "")
        async with receiver.client() as client:
            result = await send_webhook(client, "https://r.example.com/h", b"{}", {})

        assert result.success is False
        assert result.status_code == 302

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timeout", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await send_webhook(client, "https://r.example.com/h", b"{}", {})

        assert result.success is False
        assert result.status_code is None
        assert result.body == "Request timed out"

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            result = await send_webhook(client, "https://r.example.com/h", b"{}", {})

        assert result.success is False
        assert "Connection error" in result.body

    @pytest.mark.asyncio
    async def test_slow_body_bounded_by_request_timeout(self):
        """A receiver trickling its body cannot hold an attempt past the timeout."""
        finished = asyncio.Event()

        async def trickle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            await reader.readuntil(b"\r\n\r\n")
            writer.write(b"HTTP/1.1 200 OK\r\nContent-Length: 100000\r\n\r\n")
            try:
                while not finished.is_set():
                    writer.write(b"x")
                    await writer.drain()
                    await asyncio.sleep(0.1)
            except ConnectionError:
                pass
            finally:
                writer.close()

        server = await asyncio.start_server(trickle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            async with httpx.AsyncClient() as client:
                result = await asyncio.wait_for(
                    send_webhook(
                        client, f"http://127.0.0.1:{port}/h", b"{}", {}, request_timeout=0.5
                    ),
                    timeout=5,
                )
        finally:
            finished.set()
            server.close()
            await server.wait_closed()

        assert result.success is False
        assert result.status_code is None
        assert result.body == "Request timed out"
        assert result.duration < 2

    @pytest.mark.asyncio
    async def test_body_read_is_capped(self):
        receiver = Receiver(500, "e" * 5000)
        async with receiver.client() as client:
            result = await send_webhook(
                client, "https://r.example.com/h", b"{}", {}, body_limit=1024
            )

        assert result.status_code == 500
        assert result.body == "e" * 1024

    @pytest.mark.asyncio
    async def test_payload_sent_verbatim(self):
        receiver = Receiver()
        payload = b'{"event":"license.sold","data":{"x":"\xc3\xa9"}}'
        async with receiver.client() as client:
            await send_webhook(client, "https://r.example.com/h", payload, {"X-A": "1"})

        assert receiver.requests[0].content == payload
        assert receiver.requests[0].headers["X-A"] == "1"


class TestProcessDelivery:
    """Tests for a single delivery attempt."""

    @pytest.mark.asyncio
    async def test_signed_request(
        self,
        test_session: AsyncSession,
        test_settings: Settings,
        endpoint_with_secret: tuple[WebhookEndpoint, str],
    ):
        """Receivers get the stored payload, event, id and a verifiable signature."""
        endpoint, secret = endpoint_with_secret
        delivery = await _enqueue(test_session, endpoint)
        receiver = Receiver()

        async with receiver.client() as client:
            await process_delivery(delivery, test_session, client, test_settings)

        request = receiver.requests[0]
        assert request.method == "POST"
        assert str(request.url) == endpoint.url
        assert request.content == delivery.payload
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["X-Webhook-Event"] == "license.sold"
        assert request.headers["X-Webhook-ID"] == str(delivery.id)
        assert verify_signature(request.content, request.headers["X-Webhook-Signature"], secret)
        assert json.loads(request.content)["data"] == {"license_id": "lic_1"}

    @pytest.mark.asyncio
    async def test_server_error_schedules_retry(
        self,
        test_session: AsyncSession,
        test_settings: Settings,
        endpoint_with_secret: tuple[WebhookEndpoint, str],
    ):
        endpoint, _ = endpoint_with_secret
        delivery = await _enqueue(test_session, endpoint)
        receiver = Receiver(500, "boom")

        before = datetime.now(UTC)
        async with receiver.client() as client:
            outcome = await process_delivery(delivery, test_session, client, test_settings)
        await test_session.commit()
        await test_session.refresh(delivery)

        assert outcome == DeliveryStatus.PENDING
        assert delivery.status == DeliveryStatus.PENDING.value
        assert delivery.attempts == 1
        assert delivery.response_status == 500
        assert delivery.response_body == "boom"
        next_retry = as_utc(delivery.next_retry_at)
        assert before + timedelta(seconds=30) <= next_retry
        assert next_retry <= datetime.now(UTC) + timedelta(seconds=30)

    @pytest.mark.asyncio
    async def test_client_error_treated_like_server_error(
        self,
        test_session: AsyncSession,
        test_settings: Settings,
        endpoint_with_secret: tuple[WebhookEndpoint, str],
    ):
        endpoint, _ = endpoint_with_secret
        delivery = await _enqueue(test_session, endpoint)
        receiver = Receiver(410, "gone")

        async with receiver.client() as client:
            outcome = await process_delivery(delivery, test_session, client, test_settings)

        assert outcome == DeliveryStatus.PENDING

    @pytest.mark.asyncio
    async def test_last_failure_marks_dead(
        self,
        test_session: AsyncSession,
        test_settings: Settings,
        endpoint_with_secret: tuple[WebhookEndpoint, str],
    ):
        endpoint, _ = endpoint_with_secret
        delivery = await _enqueue(test_session, endpoint, attempts=4)

        async with Receiver(503).client() as client:
            outcome = await process_delivery(delivery, test_session, client, test_settings)
        await test_session.commit()
        await test_session.refresh(delivery)

        assert outcome == DeliveryStatus.DEAD
        assert delivery.status == DeliveryStatus.DEAD.value
        assert delivery.attempts == 5
        assert delivery.next_retry_at is None

    @pytest.mark.asyncio
    async def test_success_on_fifth_attempt(
        self,
        test_session: AsyncSession,
        test_settings: Settings,
        endpoint_with_secret: tuple[WebhookEndpoint, str],
    ):
        endpoint, _ = endpoint_with_secret
        delivery = await _enqueue(test_session, endpoint, attempts=4)

        async with Receiver(200).client() as client:
            outcome = await process_delivery(delivery, test_session, client, test_settings)
        await test_session.commit()
        await test_session.refresh(delivery)

        assert outcome == DeliveryStatus.SUCCESS
        assert delivery.status == DeliveryStatus.SUCCESS.value
        assert delivery.attempts == 5
        assert delivery.delivered_at is not None

    @pytest.mark.asyncio
    async def test_deleted_endpoint_marks_dead_without_request(
        self,
        test_session: AsyncSession,
        test_settings: Settings,
        endpoint_with_secret: tuple[WebhookEndpoint, str],
    ):
        endpoint, _ = endpoint_with_secret
        delivery = await _enqueue(test_session, endpoint, attempts=2)
        await delete_endpoint(test_session, endpoint)
        await test_session.commit()
        receiver = Receiver()

        async with receiver.client() as client:
            outcome = await process_delivery(delivery, test_session, client, test_settings)
        await test_session.commit()
        await test_session.refresh(delivery)

        assert outcome == DeliveryStatus.DEAD
        assert receiver.requests == []
        assert delivery.status == DeliveryStatus.DEAD.value
        assert delivery.attempts == 2

    @pytest.mark.asyncio
    async def test_undecryptable_secret_counts_as_failure(
        self,
        test_session: AsyncSession,
        test_settings: Settings,
        endpoint_with_secret: tuple[WebhookEndpoint, str],
    ):
        endpoint, _ = endpoint_with_secret
        endpoint.secret = "enc:not-a-token"
        delivery = await _enqueue(test_session, endpoint)
        receiver = Receiver()

        async with receiver.client() as client:
            outcome = await process_delivery(delivery, test_session, client, test_settings)

        assert outcome == DeliveryStatus.PENDING
        assert receiver.requests == []


class TestWebhookWorker:
    """Tests for the polling worker."""

    @pytest.mark.asyncio
    async def test_process_batch_delivers_due_only(
        self,
        test_session: AsyncSession,
        test_settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        endpoint_with_secret: tuple[WebhookEndpoint, str],
    ):
        endpoint, _ = endpoint_with_secret
        due = await _enqueue(test_session, endpoint)
        later = await _enqueue(
            test_session, endpoint, attempts=1, next_retry_at=datetime.now(UTC) + timedelta(hours=1)
        )
        receiver = Receiver()

        async with receiver.client() as client:
            worker = WebhookWorker(
                test_settings, session_factory=session_factory, http_client=client
            )
            processed = await worker.process_batch()

        assert processed == 1
        assert [r.headers["X-Webhook-ID"] for r in receiver.requests] == [str(due.id)]
        async with session_factory() as session:
            assert (await get_delivery(session, due.id)).status == DeliveryStatus.SUCCESS.value
            assert (await get_delivery(session, later.id)).status == DeliveryStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_process_batch_empty(
        self,
        test_settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        async with Receiver().client() as client:
            worker = WebhookWorker(
                test_settings, session_factory=session_factory, http_client=client
            )
            assert await worker.process_batch() == 0

    @pytest.mark.asyncio
    async def test_settled_delivery_is_skipped(
        self,
        test_session: AsyncSession,
        test_settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        endpoint_with_secret: tuple[WebhookEndpoint, str],
    ):
        """A delivery settled after the batch was listed is not attempted again."""
        endpoint, _ = endpoint_with_secret
        delivery = await _enqueue(test_session, endpoint, status=DeliveryStatus.DEAD.value)
        receiver = Receiver()

        async with receiver.client() as client:
            worker = WebhookWorker(
                test_settings, session_factory=session_factory, http_client=client
            )
            assert await worker._process_single_delivery(delivery.id) is None

        assert receiver.requests == []

    @pytest.mark.asyncio
    async def test_concurrent_batch(
        self,
        test_session: AsyncSession,
        test_settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        endpoint_with_secret: tuple[WebhookEndpoint, str],
    ):
        endpoint, _ = endpoint_with_secret
        for _ in range(4):
            await _enqueue(test_session, endpoint)
        settings = test_settings.model_copy(update={"worker_concurrency": 3})
        receiver = Receiver(500)

        async with receiver.client() as client:
            worker = WebhookWorker(settings, session_factory=session_factory, http_client=client)
            assert await worker.process_batch() == 4

        assert len(receiver.requests) == 4

    @pytest.mark.asyncio
    async def test_attempts_never_decrease(
        self,
        test_session: AsyncSession,
        test_settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        endpoint_with_secret: tuple[WebhookEndpoint, str],
    ):
        """Repeated failures walk attempts up to the budget and stop."""
        endpoint, _ = endpoint_with_secret
        delivery = await _enqueue(test_session, endpoint)
        seen: list[int] = []

        async with Receiver(500).client() as client:
            worker = WebhookWorker(
                test_settings, session_factory=session_factory, http_client=client
            )
            for _ in range(7):
                # Make the scheduled retry due right away
                async with session_factory() as session:
                    row = await get_delivery(session, delivery.id)
                    if row.status == DeliveryStatus.PENDING.value:
                        row.next_retry_at = None
                    await session.commit()
                await worker.process_batch()
                async with session_factory() as session:
                    seen.append((await get_delivery(session, delivery.id)).attempts)

        assert seen == sorted(seen)
        assert seen[-1] == 5
        async with session_factory() as session:
            assert (await get_delivery(session, delivery.id)).status == DeliveryStatus.DEAD.value

    @pytest.mark.asyncio
    async def test_start_and_stop(
        self,
        test_session: AsyncSession,
        test_settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        endpoint_with_secret: tuple[WebhookEndpoint, str],
    ):
        endpoint, _ = endpoint_with_secret
        delivery = await _enqueue(test_session, endpoint)
        receiver = Receiver()

        async with receiver.client() as client:
            worker = WebhookWorker(
                test_settings, session_factory=session_factory, http_client=client
            )
            worker.start()
            for _ in range(100):
                if receiver.requests:
                    break
                await asyncio.sleep(0.02)
            await worker.stop(timeout=5)

        assert len(receiver.requests) == 1
        async with session_factory() as session:
            assert (await get_delivery(session, delivery.id)).status == DeliveryStatus.SUCCESS.value

"""Endpoint registry: registration records owned by product users."""

import logging
import secrets
import uuid
from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fasthook.config import Settings, get_settings
from fasthook.crypto import decrypt_secret, encrypt_secret
from fasthook.db.enums import WebhookEvent
from fasthook.db.models import WebhookEndpoint
from fasthook.webhook.url_validator import validate_webhook_url

logger = logging.getLogger(__name__)

SECRET_PREFIX = "whsec_"


def generate_secret() -> str:
    """Generate a signing secret (``whsec_`` + 32 random bytes as hex)."""
    return SECRET_PREFIX + secrets.token_hex(32)


def validate_events(events: Iterable[str]) -> list[str]:
    """Validate and de-duplicate subscribed event types, keeping their order.

    Raises:
        ValueError: If an event type is not supported
    """
    allowed = WebhookEvent.values()
    cleaned: list[str] = []
    for event in events:
        if event not in allowed:
            raise ValueError(f"Invalid event: {event}")
        if event not in cleaned:
            cleaned.append(event)
    return cleaned


def validate_endpoint_url(url: str, settings: Settings) -> str:
    """Check an endpoint URL against the SSRF rules when protection is on."""
    if settings.webhook_ssrf_protection:
        validate_webhook_url(
            url,
            resolve_dns=False,
            allowed_domains=settings.webhook_allowed_internal_domains,
        )
    return url


def get_signing_secret(endpoint: WebhookEndpoint, settings: Settings | None = None) -> str:
    """Return the plaintext signing secret of an endpoint."""
    settings = settings or get_settings()
    return decrypt_secret(endpoint.secret, settings.encryption_key)


async def create_endpoint(
    session: AsyncSession,
    owner_id: str,
    url: str,
    events: Iterable[str],
    settings: Settings | None = None,
) -> tuple[WebhookEndpoint, str]:
    """Register a new endpoint.

    Returns:
        Tuple of (endpoint, plaintext secret). The secret is not retrievable
        through the registry afterwards.

    Raises:
        ValueError: Unknown event type or malformed URL
        UnsafeURLError: URL targets a blocked address
    """
    settings = settings or get_settings()
    validate_endpoint_url(url, settings)
    event_list = validate_events(events)

    secret = generate_secret()
    endpoint = WebhookEndpoint(
        owner_id=owner_id,
        url=url,
        secret=encrypt_secret(secret, settings.encryption_key),
        events=event_list,
        is_active=True,
    )
    session.add(endpoint)
    await session.flush()
    await session.refresh(endpoint)

    logger.info(f"Registered endpoint {endpoint.id} for owner {owner_id} ({', '.join(event_list)})")
    return endpoint, secret


async def get_endpoint(
    session: AsyncSession,
    endpoint_id: uuid.UUID,
) -> WebhookEndpoint | None:
    stmt = select(WebhookEndpoint).where(WebhookEndpoint.id == endpoint_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_endpoints(session: AsyncSession, owner_id: str) -> list[WebhookEndpoint]:
    """List an owner's endpoints, newest first."""
    stmt = (
        select(WebhookEndpoint)
        .where(WebhookEndpoint.owner_id == owner_id)
        .order_by(WebhookEndpoint.created_at.desc())
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def update_endpoint(
    session: AsyncSession,
    endpoint: WebhookEndpoint,
    url: str | None = None,
    events: Iterable[str] | None = None,
    is_active: bool | None = None,
    settings: Settings | None = None,
) -> WebhookEndpoint:
    """Update the mutable fields of an endpoint. The secret cannot be changed."""
    settings = settings or get_settings()
    if url is not None:
        endpoint.url = validate_endpoint_url(url, settings)
    if events is not None:
        endpoint.events = validate_events(events)
    if is_active is not None:
        endpoint.is_active = is_active

    await session.flush()
    await session.refresh(endpoint)
    logger.info(f"Updated endpoint {endpoint.id}")
    return endpoint


async def delete_endpoint(session: AsyncSession, endpoint: WebhookEndpoint) -> None:
    """Delete an endpoint. Its deliveries are kept; pending ones will go dead."""
    await session.delete(endpoint)
    await session.flush()
    logger.info(f"Deleted endpoint {endpoint.id}")

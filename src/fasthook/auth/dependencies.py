"""FastAPI authentication dependencies.

FastHook sits behind the product's own authentication. The product calls the
API with the shared service key in ``X-API-Key`` and names the user it acts
for in ``X-Owner-ID``.
"""

import secrets
import uuid
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from fasthook.config import Settings, get_settings
from fasthook.db.models import WebhookEndpoint
from fasthook.webhook.registry import get_endpoint


@dataclass
class AuthContext:
    """Authentication context for the current request."""

    owner_id: str

    def require_owner(self, endpoint: WebhookEndpoint) -> None:
        """Require that the endpoint belongs to the calling owner."""
        if endpoint.owner_id != self.owner_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not authorized",
            )


async def get_auth_context(
    x_api_key: Annotated[str | None, Header()] = None,
    x_owner_id: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> AuthContext:
    """Validate the service key and return the acting owner."""
    if not x_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    # Timing-safe comparison
    if not secrets.compare_digest(
        x_api_key.encode(), settings.api_key.get_secret_value().encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    owner_id = (x_owner_id or "").strip()
    if not owner_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Owner-ID header required",
        )

    return AuthContext(owner_id=owner_id)


Auth = Annotated[AuthContext, Depends(get_auth_context)]


async def get_endpoint_with_access(
    endpoint_id: uuid.UUID,
    auth: AuthContext,
    session: AsyncSession,
) -> WebhookEndpoint:
    """Load an endpoint and check that the caller owns it.

    Raises:
        HTTPException: 404 if not found, 403 if owned by someone else
    """
    endpoint = await get_endpoint(session, endpoint_id)
    if endpoint is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Webhook not found",
        )
    auth.require_owner(endpoint)
    return endpoint

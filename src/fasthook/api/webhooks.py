"""Webhook endpoint registration API."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from fasthook.auth import Auth, get_endpoint_with_access
from fasthook.config import Settings, get_settings
from fasthook.db.enums import DeliveryStatus
from fasthook.db.session import get_session
from fasthook.schemas import (
    DeliveryListResponse,
    DeliveryResponse,
    EndpointCreate,
    EndpointCreatedResponse,
    EndpointResponse,
    EndpointUpdate,
)
from fasthook.webhook.queue import list_deliveries
from fasthook.webhook.registry import (
    create_endpoint,
    delete_endpoint,
    list_endpoints,
    update_endpoint,
)
from fasthook.webhook.url_validator import UnsafeURLError

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("", response_model=EndpointCreatedResponse, status_code=status.HTTP_201_CREATED)
async def register_webhook(
    data: EndpointCreate,
    auth: Auth,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> EndpointCreatedResponse:
    """Register an endpoint. The signing secret is only returned here."""
    try:
        endpoint, secret = await create_endpoint(
            session,
            owner_id=auth.owner_id,
            url=str(data.url),
            events=data.events,
            settings=settings,
        )
    except (UnsafeURLError, ValueError) as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e

    response = EndpointResponse.model_validate(endpoint)
    return EndpointCreatedResponse(**response.model_dump(), secret=secret)


@router.get("", response_model=list[EndpointResponse])
async def list_webhooks(
    auth: Auth,
    session: AsyncSession = Depends(get_session),
) -> list[EndpointResponse]:
    """List the caller's endpoints, newest first."""
    endpoints = await list_endpoints(session, auth.owner_id)
    return [EndpointResponse.model_validate(e) for e in endpoints]


@router.get("/{endpoint_id}", response_model=EndpointResponse)
async def get_webhook(
    endpoint_id: uuid.UUID,
    auth: Auth,
    session: AsyncSession = Depends(get_session),
) -> EndpointResponse:
    """Get an endpoint by ID."""
    endpoint = await get_endpoint_with_access(endpoint_id, auth, session)
    return EndpointResponse.model_validate(endpoint)


@router.patch("/{endpoint_id}", response_model=EndpointResponse)
async def update_webhook(
    endpoint_id: uuid.UUID,
    data: EndpointUpdate,
    auth: Auth,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> EndpointResponse:
    """Update an endpoint's URL, subscriptions or active flag."""
    endpoint = await get_endpoint_with_access(endpoint_id, auth, session)

    try:
        endpoint = await update_endpoint(
            session,
            endpoint,
            url=str(data.url) if data.url is not None else None,
            events=data.events,
            is_active=data.is_active,
            settings=settings,
        )
    except (UnsafeURLError, ValueError) as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e

    return EndpointResponse.model_validate(endpoint)


@router.delete("/{endpoint_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_webhook(
    endpoint_id: uuid.UUID,
    auth: Auth,
    session: AsyncSession = Depends(get_session),
) -> Response:
    """Delete an endpoint. Its pending deliveries will be marked dead."""
    endpoint = await get_endpoint_with_access(endpoint_id, auth, session)
    await delete_endpoint(session, endpoint)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{endpoint_id}/deliveries", response_model=DeliveryListResponse)
async def list_webhook_deliveries(
    endpoint_id: uuid.UUID,
    auth: Auth,
    session: AsyncSession = Depends(get_session),
    status_filter: DeliveryStatus | None = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
) -> DeliveryListResponse:
    """List deliveries for an endpoint, newest first."""
    await get_endpoint_with_access(endpoint_id, auth, session)

    deliveries, total = await list_deliveries(
        session,
        endpoint_id,
        limit=limit,
        offset=offset,
        status=status_filter,
    )
    return DeliveryListResponse(
        deliveries=[DeliveryResponse.model_validate(d) for d in deliveries],
        total=total,
    )

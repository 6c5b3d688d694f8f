"""Delivery inspection and manual retry API."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from fasthook.auth import Auth, AuthContext
from fasthook.config import Settings, get_settings
from fasthook.db.models import WebhookDelivery
from fasthook.db.session import get_session
from fasthook.schemas import DeliveryDetailResponse, DeliveryResponse
from fasthook.webhook.queue import (
    DeliveryNotRetryableError,
    find_endpoint_by_id,
    get_delivery,
    retry_delivery,
)

router = APIRouter(prefix="/deliveries", tags=["deliveries"])


async def _get_delivery_with_access(
    delivery_id: int,
    auth: AuthContext,
    session: AsyncSession,
) -> WebhookDelivery:
    """Load a delivery the caller may see.

    Deliveries of deleted endpoints have no owner left and are reported as
    not found.
    """
    delivery = await get_delivery(session, delivery_id)
    endpoint = await find_endpoint_by_id(session, delivery.endpoint_id) if delivery else None
    if delivery is None or endpoint is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Delivery not found",
        )
    auth.require_owner(endpoint)
    return delivery


@router.get("/{delivery_id}", response_model=DeliveryDetailResponse)
async def get_delivery_detail(
    delivery_id: int,
    auth: Auth,
    session: AsyncSession = Depends(get_session),
) -> DeliveryDetailResponse:
    """Get a delivery including the envelope that was sent."""
    delivery = await _get_delivery_with_access(delivery_id, auth, session)
    return DeliveryDetailResponse.model_validate(delivery)


@router.post("/{delivery_id}/retry", response_model=DeliveryResponse)
async def retry_delivery_endpoint(
    delivery_id: int,
    auth: Auth,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> DeliveryResponse:
    """Make a delivery due again. Delivered webhooks cannot be retried."""
    await _get_delivery_with_access(delivery_id, auth, session)

    try:
        delivery = await retry_delivery(session, delivery_id, settings)
    except DeliveryNotRetryableError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(e),
        ) from e

    if delivery is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Delivery not found",
        )
    return DeliveryResponse.model_validate(delivery)

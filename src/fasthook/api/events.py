"""Event intake API for producers that run outside this process."""

from fastapi import APIRouter, Depends, HTTPException, status

from fasthook.api.dependencies import get_dispatcher
from fasthook.auth import Auth
from fasthook.schemas import EventAccepted, EventPublish
from fasthook.webhook.dispatcher import EventDispatcher

router = APIRouter(prefix="/events", tags=["events"])


@router.post("", response_model=EventAccepted, status_code=status.HTTP_202_ACCEPTED)
async def publish_event(
    data: EventPublish,
    auth: Auth,
    dispatcher: EventDispatcher = Depends(get_dispatcher),
) -> EventAccepted:
    """Queue a domain event for the caller's subscribed endpoints.

    Returns as soon as the event is queued; deliveries are created in the
    background.
    """
    if not dispatcher.submit(auth.owner_id, data.event.value, data.data):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Event queue is full, try again later",
        )
    return EventAccepted(queued=True, event=data.event.value)

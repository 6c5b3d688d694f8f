"""Shared API dependencies."""

from fastapi import HTTPException, Request, status

from fasthook.webhook.dispatcher import EventDispatcher


def get_dispatcher(request: Request) -> EventDispatcher:
    """Return the event dispatcher created by the application lifespan."""
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Event dispatcher not running",
        )
    return dispatcher

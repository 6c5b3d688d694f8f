"""Operations API endpoints (health, ready)."""

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from fasthook import __version__
from fasthook.config import Settings, get_settings
from fasthook.db.session import get_session
from fasthook.metrics.definitions import QUEUE_DEPTH
from fasthook.schemas import HealthResponse, QueueStats, ReadyResponse
from fasthook.webhook.queue import get_status_counts

router = APIRouter(tags=["operations"])


@router.get("/health", response_model=HealthResponse)
async def health_check(
    settings: Settings = Depends(get_settings),
) -> HealthResponse:
    """Health check endpoint - returns server status."""
    return HealthResponse(
        status="ok",
        version=__version__,
        instance_id=settings.instance_id,
    )


async def _get_queue_stats(session: AsyncSession) -> QueueStats:
    """Get delivery queue statistics and refresh the depth gauge."""
    counts = await get_status_counts(session)
    for delivery_status, count in counts.items():
        QUEUE_DEPTH.labels(status=delivery_status).set(count)
    return QueueStats(**counts)


@router.get("/ready", response_model=ReadyResponse)
async def ready_check(
    request: Request,
    session: AsyncSession = Depends(get_session),
    include_queue: bool = Query(False, description="Include delivery statistics"),
) -> ReadyResponse:
    """Readiness check endpoint - verifies system health.

    Query parameters:
    - include_queue: Include delivery counts (pending/success/dead)
    """
    try:
        await session.execute(text("SELECT 1"))
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not ready",
        ) from e

    response = ReadyResponse(status="ok", database="ok")

    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is not None:
        response.dispatch_queue = dispatcher.pending_events

    if include_queue:
        response.queue = await _get_queue_stats(session)

    return response

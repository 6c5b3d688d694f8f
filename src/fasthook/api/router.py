"""Main API router combining all endpoints."""

from fastapi import APIRouter

from fasthook.api import deliveries, events, operations, webhooks

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(operations.router)
api_router.include_router(webhooks.router)
api_router.include_router(deliveries.router)
api_router.include_router(events.router)

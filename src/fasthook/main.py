"""FastHook main application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from fasthook import __version__
from fasthook.api.router import api_router
from fasthook.config import Settings, get_settings
from fasthook.db.session import close_engine
from fasthook.metrics import MetricsMiddleware
from fasthook.middleware import RequestLoggingMiddleware
from fasthook.webhook.dispatcher import EventDispatcher

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the event dispatcher for as long as the API is up.

    Events still queued at shutdown are dispatched before the database
    engine is disposed.
    """
    dispatcher = EventDispatcher(settings=app.state.settings)
    dispatcher.start()
    app.state.dispatcher = dispatcher
    logger.info(f"FastHook API {__version__} started (instance: {app.state.settings.instance_id})")

    try:
        yield
    finally:
        await dispatcher.stop(drain=True)
        app.state.dispatcher = None
        await close_engine()


def _configure_cors(app: FastAPI, origins: list[str]) -> None:
    # Credentials are never allowed together with a wildcard origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )


async def metrics_endpoint() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Optional settings override for testing. If not provided,
                  default settings will be loaded from environment.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="FastHook",
        description="Outbound webhook delivery service",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    # Set by the lifespan; producers reach it through app.state
    app.state.dispatcher = None

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(MetricsMiddleware)
    if settings.cors_origins:
        _configure_cors(app, settings.cors_origins)

    app.include_router(api_router)
    app.add_api_route("/metrics", metrics_endpoint, methods=["GET"], include_in_schema=False)

    return app


app = create_app()

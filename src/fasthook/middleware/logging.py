"""Request logging middleware for API observability."""

import logging
import time
from collections.abc import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("fasthook.access")

PROCESS_TIME_HEADER = "X-Process-Time-Ms"


def client_address(request: Request) -> str:
    """Return the caller's address, preferring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop
    return request.client.host if request.client else "unknown"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Writes one access log line per request.

    Line format: ``IP METHOD PATH STATUS TIME_MS owner=OWNER``. The owner is
    taken from ``X-Owner-ID``; the API key is never logged.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response: Response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        logger.info(
            "%s %s %s %d %.2fms owner=%s",
            client_address(request),
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
            request.headers.get("X-Owner-ID") or "-",
        )
        response.headers[PROCESS_TIME_HEADER] = f"{elapsed_ms:.2f}"
        return response

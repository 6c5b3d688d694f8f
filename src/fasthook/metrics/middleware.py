"""Prometheus metrics middleware for FastAPI."""

import time
from collections.abc import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from fasthook.metrics.definitions import REQUEST_DURATION, REQUEST_TOTAL

# Probes and the scrape endpoint would dominate the request counters
UNMEASURED_PATHS = frozenset({"/metrics", "/api/v1/health", "/api/v1/ready"})


def route_label(request: Request) -> str:
    """Label requests by route pattern (``/webhooks/{endpoint_id}``), not raw path.

    Raw paths carry endpoint and delivery ids and would explode label cardinality.
    Unmatched requests fall back to the path without a trailing slash.

    Depending on the Starlette version the matched route reports its path with
    or without the prefix of the router it was included from. The prefix holds
    no parameters, so it is taken from the leading segments of the request path.
    """
    path = request.url.path.rstrip("/") or "/"
    template = getattr(request.scope.get("route"), "path", None)
    if not template or template == "/":
        return path

    segments = path.split("/")
    prefix_depth = len(segments) - len(template.rstrip("/").split("/"))
    if prefix_depth <= 0:
        return template
    return "/".join(segments[: prefix_depth + 1]) + template


class MetricsMiddleware(BaseHTTPMiddleware):
    """Collects request count and latency for the management API.

    A request that escapes as an exception is counted with status 500.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in UNMEASURED_PATHS:
            return await call_next(request)

        status_code = 500
        started = time.perf_counter()
        try:
            response: Response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            label = route_label(request)
            REQUEST_TOTAL.labels(
                method=request.method, endpoint=label, status_code=status_code
            ).inc()
            REQUEST_DURATION.labels(method=request.method, endpoint=label).observe(
                time.perf_counter() - started
            )

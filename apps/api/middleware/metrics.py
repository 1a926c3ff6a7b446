"""HTTP instrumentation for the API key pipeline.

Every request outside ``excluded_paths`` is counted and timed under its route
template. Requests that match no route share one label, so credential
scanners probing random paths cannot grow the label set. Unhandled errors are
recorded as 500 before they propagate.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Iterable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from apps.api.routes.metrics import (
    http_request_duration_seconds,
    http_requests_in_progress,
    http_requests_total,
)

UNMATCHED_ROUTE = "<unmatched>"


def route_label(request: Request) -> str:
    """Return the matched route template, e.g. ``/api/v1/key/usage``."""
    route = request.scope.get("route")
    template = getattr(route, "path", None)
    return template if isinstance(template, str) else UNMATCHED_ROUTE


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record request counts, latencies and in-flight requests.

    Example:
        >>> app.add_middleware(PrometheusMiddleware, excluded_paths=("/metrics", "/health"))
    """

    def __init__(self, app: ASGIApp, excluded_paths: Iterable[str] = ("/metrics",)) -> None:
        super().__init__(app)
        self._excluded = frozenset(excluded_paths)

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        if request.url.path in self._excluded:
            return await call_next(request)

        in_progress = http_requests_in_progress.labels(method=request.method)
        in_progress.inc()
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            in_progress.dec()
            # The route is only known once routing ran inside call_next
            route = route_label(request)
            http_requests_total.labels(
                method=request.method, path=route, status=status_code
            ).inc()
            http_request_duration_seconds.labels(method=request.method, path=route).observe(
                time.perf_counter() - started
            )


__all__ = ["UNMATCHED_ROUTE", "PrometheusMiddleware", "route_label"]

"""Request context middleware.

Opens the ambient request scope before anything else runs for the request and
echoes the resolved correlation identifiers on the response.
"""

from typing import Awaitable, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from packages.common.tracing import (
    REQUEST_ID_HEADER,
    TRACE_ID_HEADER,
    TracingContext,
    begin,
)


def resolve_client_ip(request: Request) -> str | None:
    """Return the caller's address.

    The first ``X-Forwarded-For`` hop is used only when the app is configured
    to trust its proxy; otherwise the socket peer address is used.
    """
    config = getattr(request.app.state, "config", None)
    if config is not None and config.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    return request.client.host if request.client else None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Install a fresh ``RequestContext`` for every request."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Run the rest of the stack inside the request's tracing scope.

        Args:
            request: Incoming HTTP request.
            call_next: Next middleware/handler in chain.

        Returns:
            Response: HTTP response carrying X-Request-ID and X-Trace-ID.
        """
        with TracingContext(begin(request.headers)) as ctx:
            # Explicit handle for handlers that prefer not to read ambient state
            request.state.context = ctx
            response = await call_next(request)

        response.headers[REQUEST_ID_HEADER] = ctx.request_id or ""
        response.headers[TRACE_ID_HEADER] = ctx.trace_id or ""
        return response


__all__ = ["RequestContextMiddleware", "resolve_client_ip"]

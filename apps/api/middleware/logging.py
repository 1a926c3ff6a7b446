"""Request logging middleware for the MakeTicket API.

Provides structured logging for all HTTP requests with:
- Request ID correlation (from the ambient request context)
- Method and path (never the query string, which may carry ``api_key``)
- Response status code
- Elapsed time in milliseconds
- Error details on failures
"""

import time
from typing import Awaitable, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from apps.api.middleware.request_context import resolve_client_ip
from packages.common.logging import StructuredLogger, get_logger


def _request_logger(request: Request) -> StructuredLogger:
    logger = getattr(request.app.state, "logger", None)
    if isinstance(logger, StructuredLogger):
        return logger
    return StructuredLogger(get_logger(__name__))


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging all HTTP requests with correlation IDs."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Process request and log details.

        Args:
            request: Incoming HTTP request.
            call_next: Next middleware/handler in chain.

        Returns:
            Response: HTTP response from handler.
        """
        logger = _request_logger(request).child(component="http")
        client_ip = resolve_client_ip(request)
        path = request.url.path
        start_ns = time.perf_counter_ns()

        logger.http_request(
            method=request.method,
            path=path,
            client_ip=client_ip,
            user_agent=request.headers.get("user-agent"),
        )

        try:
            response = await call_next(request)
        except Exception as e:
            elapsed_ms = (time.perf_counter_ns() - start_ns) / 1_000_000
            logger.error(
                "http.request.failed",
                {
                    "http": {
                        "method": request.method,
                        "path": path,
                        "response_time_ms": round(elapsed_ms, 2),
                    }
                },
                e,
            )
            # Re-raise to allow FastAPI error handlers to process
            raise

        elapsed_ms = (time.perf_counter_ns() - start_ns) / 1_000_000
        logger.http_response(
            method=request.method,
            path=path,
            status_code=response.status_code,
            response_time_ms=round(elapsed_ms, 2),
            client_ip=client_ip,
        )
        return response


__all__ = ["RequestLoggingMiddleware"]

"""Middleware for the MakeTicket API."""

from apps.api.middleware.logging import RequestLoggingMiddleware
from apps.api.middleware.metrics import PrometheusMiddleware
from apps.api.middleware.request_context import RequestContextMiddleware, resolve_client_ip

__all__ = [
    "PrometheusMiddleware",
    "RequestContextMiddleware",
    "RequestLoggingMiddleware",
    "resolve_client_ip",
]

"""Prometheus metrics endpoint for the MakeTicket API.

Exposes application metrics in Prometheus format for monitoring and alerting:
- HTTP request counts and latency
- API key authentication outcomes by result code
"""

from __future__ import annotations

from fastapi import APIRouter, Response
from prometheus_client import REGISTRY, Counter, Gauge, Histogram, generate_latest

router = APIRouter(tags=["observability"])

# HTTP request metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
    registry=REGISTRY,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path"],
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

http_requests_in_progress = Gauge(
    "http_requests_in_progress",
    "HTTP requests currently being handled",
    ["method"],
    registry=REGISTRY,
)

# Authentication metrics
api_key_auth_attempts_total = Counter(
    "api_key_auth_attempts_total",
    "API key authentication attempts by outcome",
    ["outcome"],
    registry=REGISTRY,
)


@router.get("/metrics")
async def prometheus_metrics() -> Response:
    """Prometheus metrics endpoint.

    Returns metrics in Prometheus text exposition format.

    Returns:
        Response: Prometheus metrics in text/plain format.

    Example:
        $ curl http://localhost:8000/metrics
        # HELP api_key_auth_attempts_total API key authentication attempts by outcome
        # TYPE api_key_auth_attempts_total counter
        api_key_auth_attempts_total{outcome="success"} 42.0
        ...
    """
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


# Export public API
__all__ = [
    "router",
    "api_key_auth_attempts_total",
    "http_requests_in_progress",
    "http_requests_total",
    "http_request_duration_seconds",
]

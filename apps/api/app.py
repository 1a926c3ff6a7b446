"""FastAPI application for the MakeTicket API with CORS, lifecycle management, and middleware."""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import redis.asyncio as redis
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from limits.storage import storage_from_string

from apps.api.middleware.logging import RequestLoggingMiddleware
from apps.api.middleware.metrics import PrometheusMiddleware
from apps.api.middleware.request_context import RequestContextMiddleware
from apps.api.routes import external, metrics
from apps.api.schemas.envelope import ResponseEnvelope
from packages.common.api_key_auth import ApiKeyAuthenticator
from packages.common.api_key_errors import ApiKeyAuthError
from packages.common.api_key_store import InMemoryApiKeyStore, KeyStore, RedisApiKeyStore
from packages.common.config import MakeTicketConfig, get_config
from packages.common.logging import configure_logging, shutdown_logging
from packages.common.rate_limiter import (
    RATE_LIMIT_LIMIT_HEADER,
    RATE_LIMIT_REMAINING_HEADER,
    RATE_LIMIT_RESET_HEADER,
    FixedWindowRateLimiter,
)
from packages.common.tracing import REQUEST_ID_HEADER, TRACE_ID_HEADER

# Single source of truth for version
try:
    from importlib.metadata import version as get_version

    VERSION = get_version("maketicket-api")
except Exception:
    # Fallback for development or when package not installed
    VERSION = os.getenv("MAKETICKET_VERSION", "0.1.0")


def _build_redis(config: MakeTicketConfig) -> redis.Redis:
    redis_pool: redis.ConnectionPool = redis.ConnectionPool.from_url(
        config.redis_url,
        password=config.redis_password.get_secret_value() if config.redis_password else None,
        max_connections=config.redis_max_connections,
        socket_timeout=config.redis_socket_timeout,
        health_check_interval=30,
    )
    return redis.Redis(connection_pool=redis_pool)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifecycle: startup and shutdown.

    Startup:
        - Configure logging and keep the injected logger on app state
        - Initialize Redis client with connection pooling (redis backend only)
        - Build the key store, rate limiter and authenticator once

    Shutdown (reverse order):
        - Await pending usage counter updates
        - Close the Redis client
        - Flush and remove log handlers
    """
    config: MakeTicketConfig = app.state.config
    logger = configure_logging(config)
    app.state.logger = logger

    logger.info(
        "app.starting",
        {"version": VERSION, "environment": config.environment, "backend": config.key_store_backend},
    )

    store: KeyStore | None = app.state.injected_key_store
    if store is None:
        if config.key_store_backend == "redis":
            try:
                app.state.redis = _build_redis(config)
            except Exception as e:
                logger.fatal("app.redis_init_failed", e)
                shutdown_logging()
                raise
            logger.info(
                "app.redis_initialized",
                {"max_connections": config.redis_max_connections},
            )
            store = RedisApiKeyStore(app.state.redis, logger)
        else:
            store = InMemoryApiKeyStore(logger)
    app.state.key_store = store

    app.state.rate_limiter = FixedWindowRateLimiter(
        window_seconds=config.rate_limit_window_seconds,
        storage=storage_from_string(config.rate_limit_storage_uri),
        logger=logger.child(component="rate_limiter"),
    )
    app.state.authenticator = ApiKeyAuthenticator(
        store,
        app.state.rate_limiter,
        logger,
        usage_update_max_attempts=config.usage_update_max_attempts,
    )

    logger.info("app.started")

    yield

    logger.info("app.stopping")

    try:
        await app.state.authenticator.drain()
    except Exception as e:
        logger.error("app.usage_drain_failed", e)

    if getattr(app.state, "redis", None) is not None:
        try:
            await app.state.redis.aclose()
            logger.info("app.redis_closed")
        except Exception as e:
            logger.error("app.redis_close_failed", e)
        app.state.redis = None

    logger.info("app.stopped")
    shutdown_logging()


async def handle_api_key_error(request: Request, exc: ApiKeyAuthError) -> JSONResponse:
    """Render an ``ApiKeyAuthError`` as ``{"success": false, "error", "message"}``.

    Quota headers from an earlier successful authentication in the same
    request are kept (e.g. for insufficient scope rejections).
    """
    headers: dict[str, str] = dict(getattr(request.state, "rate_limit_headers", {}))
    headers.update(exc.headers)
    if exc.status_code == 401:
        headers.setdefault("WWW-Authenticate", "ApiKey")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def create_app(
    config: MakeTicketConfig | None = None,
    *,
    key_store: KeyStore | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Settings; defaults to ``get_config()``.
        key_store: Store to use instead of the configured backend.

    Returns:
        FastAPI: Configured application.
    """
    config = config or get_config()

    app = FastAPI(
        title="MakeTicket API",
        version=VERSION,
        description="Ticketing platform external API",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.injected_key_store = key_store

    app.add_exception_handler(ApiKeyAuthError, handle_api_key_error)  # type: ignore[arg-type]

    # Starlette runs the last added middleware first
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_allow_origins,
        allow_credentials="*" not in config.cors_allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            REQUEST_ID_HEADER,
            TRACE_ID_HEADER,
            RATE_LIMIT_LIMIT_HEADER,
            RATE_LIMIT_REMAINING_HEADER,
            RATE_LIMIT_RESET_HEADER,
            "Retry-After",
        ],
    )

    app.include_router(external.router, prefix="/api/v1", tags=["external"])
    app.include_router(metrics.router)

    @app.get("/health")
    async def health(request: Request, response: Response) -> dict[str, Any]:
        """Health check endpoint.

        Returns:
            ResponseEnvelope[dict]: 200 when the key store is reachable, else 503.
        """
        services: dict[str, bool] = {"key_store": True}
        redis_client = getattr(request.app.state, "redis", None)
        if redis_client is not None:
            try:
                services["key_store"] = bool(await redis_client.ping())
            except Exception as e:
                request.app.state.logger.warn("health.redis_unreachable", e)
                services["key_store"] = False

        is_healthy = all(services.values())
        response.status_code = 200 if is_healthy else 503
        return ResponseEnvelope(
            success=is_healthy,
            data={"healthy": is_healthy, "services": services},
            error=None if is_healthy else "UNHEALTHY",
        ).model_dump()

    @app.get("/")
    async def root() -> dict[str, Any]:
        """Root endpoint.

        Returns:
            ResponseEnvelope[dict]: API info with version and docs link.
        """
        return ResponseEnvelope(
            data={"message": f"MakeTicket API v{VERSION}", "docs": "/docs"},
        ).model_dump()

    return app


app = create_app()


__all__ = ["VERSION", "app", "create_app", "handle_api_key_error", "lifespan"]

"""Authentication dependencies for FastAPI."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Annotated, cast

from fastapi import Depends, Request, Response, Security
from fastapi.security import APIKeyHeader, APIKeyQuery

from apps.api.middleware.request_context import resolve_client_ip
from apps.api.routes.metrics import api_key_auth_attempts_total
from packages.common.api_key_auth import ApiKeyAuthenticator, check_permission
from packages.common.api_key_errors import ApiKeyAuthError, InsufficientScopeError
from packages.common.logging import StructuredLogger
from packages.schemas.api_key import ApiKey

API_KEY_HEADER = "X-API-Key"
API_KEY_QUERY_PARAM = "api_key"

api_key_header = APIKeyHeader(
    name=API_KEY_HEADER, auto_error=False, description="API key for authentication"
)
api_key_query = APIKeyQuery(
    name=API_KEY_QUERY_PARAM, auto_error=False, description="API key (query fallback)"
)


async def get_authenticator(request: Request) -> ApiKeyAuthenticator:
    """Get the authenticator built during application startup.

    Args:
        request: FastAPI Request object (injected).

    Returns:
        ApiKeyAuthenticator: Process-wide authenticator from app state.
    """
    return cast(ApiKeyAuthenticator, request.app.state.authenticator)


async def authenticate_api_key(
    request: Request,
    response: Response,
    authenticator: Annotated[ApiKeyAuthenticator, Depends(get_authenticator)],
    header_key: Annotated[str | None, Security(api_key_header)],
    query_key: Annotated[str | None, Security(api_key_query)],
) -> ApiKey:
    """Authenticate the request's API key.

    The header takes precedence over the query parameter. On success the
    rate limit headers are attached to the response and the key record is
    stored on ``request.state.api_key`` for downstream handlers.

    Returns:
        ApiKey: The authenticated key record.

    Raises:
        ApiKeyAuthError: Rendered by the app's exception handler.
    """
    raw_key = header_key or query_key
    try:
        result = await authenticator.authenticate(raw_key, resolve_client_ip(request))
    except ApiKeyAuthError as exc:
        api_key_auth_attempts_total.labels(outcome=exc.code).inc()
        raise

    api_key_auth_attempts_total.labels(outcome="success").inc()
    headers = result.rate_limit.headers()
    response.headers.update(headers)
    request.state.rate_limit_headers = headers
    request.state.api_key = result.record
    return result.record


ApiKeyDep = Annotated[ApiKey, Depends(authenticate_api_key)]


def require_permission(scope: str) -> Callable[..., Awaitable[ApiKey]]:
    """Build a dependency that requires ``scope`` on the authenticated key.

    Args:
        scope: Permission string, e.g. ``read:analytics``.

    Returns:
        Callable: FastAPI dependency returning the key record.

    Example:
        >>> @router.get("/usage", dependencies=[Depends(require_permission("read:analytics"))])
    """

    async def _require(request: Request, record: ApiKeyDep) -> ApiKey:
        try:
            return check_permission(record, scope)
        except InsufficientScopeError:
            logger = getattr(request.app.state, "logger", None)
            if isinstance(logger, StructuredLogger):
                logger.security(
                    "insufficient_scope",
                    {"record_id": record.key_id, "required": scope, "path": request.url.path},
                )
            raise

    return _require


__all__ = [
    "API_KEY_HEADER",
    "API_KEY_QUERY_PARAM",
    "ApiKeyDep",
    "authenticate_api_key",
    "get_authenticator",
    "require_permission",
]

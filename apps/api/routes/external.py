"""External API routes authenticated by API key.

Business handlers for events, registrations and tickets mount under the same
prefix and depend on ``ApiKeyDep`` / ``require_permission`` the same way.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from apps.api.deps.auth import ApiKeyDep, require_permission
from apps.api.schemas.envelope import ResponseEnvelope
from packages.common.rate_limiter import RATE_LIMIT_REMAINING_HEADER
from packages.schemas.api_key import ApiKey

router = APIRouter()


@router.get("/key")
async def describe_key(record: ApiKeyDep) -> dict[str, Any]:
    """Describe the API key used to make this request.

    Returns:
        ResponseEnvelope[dict]: Key metadata without its hash.
    """
    return ResponseEnvelope(data=record.public_view()).model_dump(mode="json")


@router.get("/key/usage")
async def key_usage(
    request: Request,
    record: ApiKey = Depends(require_permission("read:analytics")),  # noqa: B008
) -> dict[str, Any]:
    """Report usage counters and quota state for the calling key.

    Requires the ``read:analytics`` permission.

    Returns:
        ResponseEnvelope[dict]: Usage count, last use and current quota.
    """
    rate_limit_headers: dict[str, str] = getattr(request.state, "rate_limit_headers", {})
    remaining = rate_limit_headers.get(RATE_LIMIT_REMAINING_HEADER)
    return ResponseEnvelope(
        data={
            "key_id": record.key_id,
            "usage_count": record.usage_count,
            "last_used_at": record.last_used_at.isoformat() if record.last_used_at else None,
            "rate_limit": record.rate_limit,
            "remaining": int(remaining) if remaining is not None else None,
        }
    ).model_dump(mode="json")


__all__ = ["router"]

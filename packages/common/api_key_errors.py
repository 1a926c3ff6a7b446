"""Error taxonomy of the API key pipeline.

Each error carries a stable machine-readable ``code``, the HTTP status it maps
to, a human message, extra ``details`` for the response body, and response
``headers``. Internal failures never expose their cause to the caller.
"""

from typing import Any

from packages.common.rate_limiter import RateLimitDecision


class ApiKeyAuthError(Exception):
    """Base class for request rejections raised by the API key pipeline."""

    code = "auth_error"
    status_code = 401
    default_message = "Authentication failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.details: dict[str, Any] = details or {}
        self.headers: dict[str, str] = headers or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Render the JSON response body."""
        body: dict[str, Any] = {"success": False, "error": self.code, "message": self.message}
        body.update(self.details)
        return body


class MissingKeyError(ApiKeyAuthError):
    code = "missing_api_key"
    default_message = (
        "API key is required. Provide it via the X-API-Key header or api_key query parameter"
    )


class InvalidKeyFormatError(ApiKeyAuthError):
    code = "invalid_api_key_format"
    default_message = "Invalid API key format: API key must start with mt_"


class InvalidOrExpiredKeyError(ApiKeyAuthError):
    code = "invalid_or_expired_api_key"
    default_message = "Invalid or expired API key"


class IpNotAllowedError(ApiKeyAuthError):
    code = "ip_not_allowed"
    status_code = 403
    default_message = "IP address not whitelisted"


class RateLimitedError(ApiKeyAuthError):
    """Quota exhausted; carries the decision and a retry-after hint."""

    code = "rate_limited"
    status_code = 429

    def __init__(self, decision: RateLimitDecision, retry_after: int) -> None:
        self.decision = decision
        self.retry_after = retry_after
        super().__init__(
            f"You have exceeded {decision.limit} requests per minute",
            details={"retry_after": retry_after},
            headers={**decision.headers(), "Retry-After": str(retry_after)},
        )


class InsufficientScopeError(ApiKeyAuthError):
    """The authenticated key lacks the permission a route requires."""

    code = "insufficient_scope"
    status_code = 403

    def __init__(self, required: str, available: list[str]) -> None:
        self.required = required
        self.available = list(available)
        super().__init__(
            f"This API key does not have '{required}' permission",
            details={"required": required, "available": self.available},
        )


class InternalLookupError(ApiKeyAuthError):
    """The key store could not be consulted; the cause stays server-side."""

    code = "internal_lookup_failure"
    status_code = 500
    default_message = "Authentication error"


__all__ = [
    "ApiKeyAuthError",
    "InsufficientScopeError",
    "InternalLookupError",
    "InvalidKeyFormatError",
    "InvalidOrExpiredKeyError",
    "IpNotAllowedError",
    "MissingKeyError",
    "RateLimitedError",
]

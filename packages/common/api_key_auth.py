"""API key authentication and permission gating.

``ApiKeyAuthenticator.authenticate`` turns a raw credential into a verified,
quota-checked key record or raises the precise ``ApiKeyAuthError``:

1. presence          -> MissingKeyError
2. ``mt_`` prefix    -> InvalidKeyFormatError (no store lookup)
3. lookup and verify -> InvalidOrExpiredKeyError / InternalLookupError
4. IP allow-list     -> IpNotAllowedError
5. quota             -> RateLimitedError

On success the usage counter is persisted in a background task and the key's
owner is merged into the ambient request context. Every attempt is logged
with its outcome code; the raw credential never is.
"""

import asyncio
import hmac
import ipaddress
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from packages.common.api_key_errors import (
    ApiKeyAuthError,
    InsufficientScopeError,
    InternalLookupError,
    InvalidKeyFormatError,
    InvalidOrExpiredKeyError,
    IpNotAllowedError,
    MissingKeyError,
    RateLimitedError,
)
from packages.common.api_key_store import KeyStore, hash_key
from packages.common.logging import StructuredLogger
from packages.common.rate_limiter import FixedWindowRateLimiter, RateLimitDecision
from packages.common.resilience import resilient_async_call
from packages.common.tracing import merge
from packages.schemas.api_key import KEY_DISPLAY_LEN, KEY_PREFIX, ApiKey


@dataclass(frozen=True)
class AuthenticatedKey:
    """Successful authentication: the key record and its quota state."""

    record: ApiKey
    rate_limit: RateLimitDecision


def _normalize_ip(value: str) -> str:
    try:
        address = ipaddress.ip_address(value.strip())
    except ValueError:
        return value.strip()
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return str(address.ipv4_mapped)
    return str(address)


def ip_allowed(client_ip: str | None, allow_list: Iterable[str]) -> bool:
    """Return True if the allow-list is empty or contains ``client_ip``.

    IPv4-mapped IPv6 addresses compare equal to their IPv4 form.
    """
    entries = list(allow_list)
    if not entries:
        return True
    if not client_ip:
        return False
    candidate = _normalize_ip(client_ip)
    return any(_normalize_ip(entry) == candidate for entry in entries)


def check_permission(record: ApiKey, scope: str) -> ApiKey:
    """Require ``scope`` in the key's permission list.

    Raises:
        InsufficientScopeError: If the scope is missing.
    """
    if not record.has_permission(scope):
        raise InsufficientScopeError(required=scope, available=record.permissions)
    return record


class ApiKeyAuthenticator:
    """Verifies API keys against a key store and a rate limiter."""

    def __init__(
        self,
        store: KeyStore,
        rate_limiter: FixedWindowRateLimiter,
        logger: StructuredLogger,
        *,
        usage_update_max_attempts: int = 3,
    ) -> None:
        """Initialize the authenticator.

        Args:
            store: Key store to look records up in.
            rate_limiter: Per-key quota enforcement.
            logger: Logger injected at process start.
            usage_update_max_attempts: Attempts for persisting usage counters.
        """
        self._store = store
        self._rate_limiter = rate_limiter
        self._logger = logger.child(component="api_key_auth")
        self._persist_usage: Callable[[str, str], Awaitable[bool]] = resilient_async_call(
            max_attempts=usage_update_max_attempts
        )(store.increment_usage)
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending_usage_updates(self) -> int:
        return len(self._pending)

    async def authenticate(self, raw_key: str | None, client_ip: str | None) -> AuthenticatedKey:
        """Authenticate one request.

        Args:
            raw_key: Credential from the X-API-Key header or api_key query parameter.
            client_ip: Address of the calling client.

        Returns:
            AuthenticatedKey: The key record and rate limit decision.

        Raises:
            ApiKeyAuthError: The specific rejection reason.
        """
        try:
            result = await self._authenticate(raw_key, client_ip)
        except ApiKeyAuthError as exc:
            self._log_rejection(exc, raw_key, client_ip)
            raise

        record = result.record
        merge(user_id=record.owner_id)
        self._schedule_usage_update(record)
        self._logger.info(
            "api_key.auth.succeeded",
            {
                "record_id": record.key_id,
                "prefix": record.key_prefix,
                "owner_id": record.owner_id,
                "remaining": result.rate_limit.remaining,
            },
        )
        return result

    async def _authenticate(self, raw_key: str | None, client_ip: str | None) -> AuthenticatedKey:
        if not raw_key:
            raise MissingKeyError()

        if not raw_key.startswith(KEY_PREFIX):
            raise InvalidKeyFormatError()

        candidate_hash = hash_key(raw_key)
        try:
            record = await self._store.find_active_by_hash(candidate_hash)
        except Exception as exc:
            self._logger.error(
                "api_key.auth.lookup_failed",
                {"prefix": raw_key[:KEY_DISPLAY_LEN], "client_ip": client_ip},
                exc,
            )
            raise InternalLookupError() from exc

        if (
            record is None
            or not hmac.compare_digest(candidate_hash, record.key_hash)
            or not record.is_active
            or record.is_expired(datetime.now(UTC))
        ):
            raise InvalidOrExpiredKeyError()

        if not ip_allowed(client_ip, record.ip_whitelist):
            raise IpNotAllowedError()

        decision = self._rate_limiter.check(record.key_hash, record.rate_limit)
        if not decision.allowed:
            retry_after = decision.retry_after_seconds(self._rate_limiter.now_ms())
            raise RateLimitedError(decision, retry_after)

        return AuthenticatedKey(record=record, rate_limit=decision)

    def _log_rejection(
        self, exc: ApiKeyAuthError, raw_key: str | None, client_ip: str | None
    ) -> None:
        if isinstance(exc, InternalLookupError):
            return  # already logged at error level with the cause
        data: dict[str, object] = {"reason": exc.code, "client_ip": client_ip}
        if raw_key and raw_key.startswith(KEY_PREFIX):
            data["prefix"] = raw_key[:KEY_DISPLAY_LEN]
        if isinstance(exc, RateLimitedError):
            data["retry_after"] = exc.retry_after
        self._logger.warn("api_key.auth.rejected", data)

    def _schedule_usage_update(self, record: ApiKey) -> None:
        task = asyncio.create_task(self._record_usage(record))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _record_usage(self, record: ApiKey) -> None:
        try:
            counted = await self._persist_usage(record.key_id, record.key_hash)
        except Exception as exc:
            self._logger.error(
                "api_key.usage_update_failed", {"record_id": record.key_id}, exc
            )
            return
        if not counted:
            # Secret was rotated while the update was pending
            self._logger.debug("api_key.usage_update_skipped", {"record_id": record.key_id})

    async def drain(self) -> None:
        """Wait for every pending usage update (called at shutdown and in tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


__all__ = ["ApiKeyAuthenticator", "AuthenticatedKey", "check_permission", "ip_allowed"]

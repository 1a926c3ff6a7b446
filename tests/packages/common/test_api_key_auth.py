"""Tests for API key authentication and permission gating."""

from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from packages.common.api_key_auth import ApiKeyAuthenticator, check_permission, ip_allowed
from packages.common.api_key_errors import (
    InsufficientScopeError,
    InternalLookupError,
    InvalidKeyFormatError,
    InvalidOrExpiredKeyError,
    IpNotAllowedError,
    MissingKeyError,
    RateLimitedError,
)
from packages.common.api_key_store import InMemoryApiKeyStore
from packages.common.logging import StructuredLogger
from packages.common.rate_limiter import FixedWindowRateLimiter
from packages.common.tracing import TracingContext, begin
from packages.schemas.api_key import ApiKey, IssuedApiKey

IssueKey = Callable[..., Awaitable[IssuedApiKey]]


@pytest.fixture
def rate_limiter(fake_clock: Any) -> FixedWindowRateLimiter:
    """Limiter whose windows follow the patched clock."""
    return FixedWindowRateLimiter()


@pytest.fixture
async def authenticator(
    memory_store: InMemoryApiKeyStore,
    rate_limiter: FixedWindowRateLimiter,
    json_logger: StructuredLogger,
) -> AsyncIterator[ApiKeyAuthenticator]:
    auth = ApiKeyAuthenticator(memory_store, rate_limiter, json_logger)
    yield auth
    await auth.drain()


@pytest.mark.asyncio
async def test_valid_key_succeeds_and_increments_usage_once(
    authenticator: ApiKeyAuthenticator, memory_store: InMemoryApiKeyStore, issue_key: IssueKey
) -> None:
    """Test the happy path: success and usage count +1."""
    issued = await issue_key(rate_limit=10)

    result = await authenticator.authenticate(issued.plaintext, "203.0.113.5")
    await authenticator.drain()

    assert result.record.key_id == issued.record.key_id
    assert result.rate_limit.allowed is True
    assert result.rate_limit.remaining == 9
    stored = await memory_store.get(issued.record.key_id)
    assert stored is not None
    assert stored.usage_count == 1
    assert stored.last_used_at is not None


@pytest.mark.asyncio
@pytest.mark.parametrize("raw_key", [None, ""])
async def test_missing_key(authenticator: ApiKeyAuthenticator, raw_key: str | None) -> None:
    with pytest.raises(MissingKeyError) as exc_info:
        await authenticator.authenticate(raw_key, "203.0.113.5")

    assert exc_info.value.status_code == 401
    assert exc_info.value.code == "missing_api_key"


@pytest.mark.asyncio
@pytest.mark.parametrize("raw_key", ["sk_live_abc", "MT_abc", "abc", " mt_abc"])
async def test_bad_format_rejected_without_lookup(
    authenticator: ApiKeyAuthenticator,
    memory_store: InMemoryApiKeyStore,
    mocker: Any,
    raw_key: str,
) -> None:
    """Test that keys without the mt_ prefix never reach the key store."""
    lookup = mocker.spy(memory_store, "find_active_by_hash")

    with pytest.raises(InvalidKeyFormatError):
        await authenticator.authenticate(raw_key, "203.0.113.5")

    assert lookup.call_count == 0


@pytest.mark.asyncio
async def test_unknown_key_rejected(authenticator: ApiKeyAuthenticator) -> None:
    with pytest.raises(InvalidOrExpiredKeyError):
        await authenticator.authenticate("mt_" + "0" * 48, "203.0.113.5")


@pytest.mark.asyncio
async def test_inactive_key_rejected(
    authenticator: ApiKeyAuthenticator, memory_store: InMemoryApiKeyStore, issue_key: IssueKey
) -> None:
    issued = await issue_key()
    await memory_store.set_active(issued.record.key_id, False)

    with pytest.raises(InvalidOrExpiredKeyError):
        await authenticator.authenticate(issued.plaintext, "203.0.113.5")


@pytest.mark.asyncio
async def test_expired_key_rejected(
    authenticator: ApiKeyAuthenticator, issue_key: IssueKey
) -> None:
    issued = await issue_key(expires_at=datetime.now(UTC) - timedelta(seconds=1))

    with pytest.raises(InvalidOrExpiredKeyError):
        await authenticator.authenticate(issued.plaintext, "203.0.113.5")


@pytest.mark.asyncio
async def test_future_expiry_accepted(
    authenticator: ApiKeyAuthenticator, issue_key: IssueKey
) -> None:
    issued = await issue_key(expires_at=datetime.now(UTC) + timedelta(days=1))

    result = await authenticator.authenticate(issued.plaintext, "203.0.113.5")

    assert result.record.key_id == issued.record.key_id


@pytest.mark.asyncio
async def test_ip_allow_list_enforced(
    authenticator: ApiKeyAuthenticator, issue_key: IssueKey
) -> None:
    """Test allow-list rejection and IPv4-mapped IPv6 matching."""
    issued = await issue_key(ip_whitelist=["10.0.0.1"])

    with pytest.raises(IpNotAllowedError) as exc_info:
        await authenticator.authenticate(issued.plaintext, "10.0.0.2")
    assert exc_info.value.status_code == 403

    assert (await authenticator.authenticate(issued.plaintext, "10.0.0.1")).record
    assert (await authenticator.authenticate(issued.plaintext, "::ffff:10.0.0.1")).record


@pytest.mark.parametrize(
    ("client_ip", "allow_list", "expected"),
    [
        ("1.2.3.4", [], True),
        (None, [], True),
        (None, ["1.2.3.4"], False),
        ("1.2.3.4", ["5.6.7.8", "1.2.3.4"], True),
        ("2001:db8::1", ["2001:0db8:0000::1"], True),
        ("not-an-ip", ["not-an-ip"], True),
    ],
)
def test_ip_allowed(client_ip: str | None, allow_list: list[str], expected: bool) -> None:
    assert ip_allowed(client_ip, allow_list) is expected


@pytest.mark.asyncio
async def test_quota_exceeded_then_next_window(
    authenticator: ApiKeyAuthenticator, issue_key: IssueKey, fake_clock: Any
) -> None:
    """Test that request N+1 is rate limited and the next window succeeds."""
    issued = await issue_key(rate_limit=2)

    first = await authenticator.authenticate(issued.plaintext, "203.0.113.5")
    second = await authenticator.authenticate(issued.plaintext, "203.0.113.5")
    assert (first.rate_limit.remaining, second.rate_limit.remaining) == (1, 0)

    fake_clock.advance(15)
    with pytest.raises(RateLimitedError) as exc_info:
        await authenticator.authenticate(issued.plaintext, "203.0.113.5")

    error = exc_info.value
    assert error.status_code == 429
    assert error.retry_after == 45
    assert error.headers["Retry-After"] == "45"
    assert error.headers["X-RateLimit-Remaining"] == "0"
    assert error.to_dict()["retry_after"] == 45

    fake_clock.advance(46)
    assert (await authenticator.authenticate(issued.plaintext, "203.0.113.5")).rate_limit.allowed


@pytest.mark.asyncio
async def test_rate_limited_requests_do_not_count_usage(
    authenticator: ApiKeyAuthenticator, memory_store: InMemoryApiKeyStore, issue_key: IssueKey
) -> None:
    issued = await issue_key(rate_limit=1)

    await authenticator.authenticate(issued.plaintext, "203.0.113.5")
    with pytest.raises(RateLimitedError):
        await authenticator.authenticate(issued.plaintext, "203.0.113.5")
    await authenticator.drain()

    stored = await memory_store.get(issued.record.key_id)
    assert stored is not None
    assert stored.usage_count == 1


@pytest.mark.asyncio
async def test_regenerated_key_scenario(
    authenticator: ApiKeyAuthenticator, memory_store: InMemoryApiKeyStore, issue_key: IssueKey
) -> None:
    """Test that the old plaintext fails and the new one succeeds with usage reset."""
    issued = await issue_key()
    await authenticator.authenticate(issued.plaintext, "203.0.113.5")
    await authenticator.drain()

    rotated = await memory_store.regenerate(issued.record.key_id)

    with pytest.raises(InvalidOrExpiredKeyError):
        await authenticator.authenticate(issued.plaintext, "203.0.113.5")

    result = await authenticator.authenticate(rotated.plaintext, "203.0.113.5")
    assert result.record.usage_count == 0
    await authenticator.drain()
    stored = await memory_store.get(issued.record.key_id)
    assert stored is not None
    assert stored.usage_count == 1


@pytest.mark.asyncio
async def test_pending_usage_from_old_secret_not_counted_after_regenerate(
    authenticator: ApiKeyAuthenticator, memory_store: InMemoryApiKeyStore, issue_key: IssueKey
) -> None:
    """Test that a usage update still in flight during rotation is dropped."""
    issued = await issue_key()
    await authenticator.authenticate(issued.plaintext, "203.0.113.5")
    assert authenticator.pending_usage_updates == 1

    await memory_store.regenerate(issued.record.key_id)
    await authenticator.drain()

    stored = await memory_store.get(issued.record.key_id)
    assert stored is not None
    assert stored.usage_count == 0


@pytest.mark.asyncio
async def test_store_failure_maps_to_internal_error(
    authenticator: ApiKeyAuthenticator,
    memory_store: InMemoryApiKeyStore,
    captured_logs: Any,
    mocker: Any,
) -> None:
    """Test that lookup failures are logged at error and hidden from the caller."""
    mocker.patch.object(
        memory_store, "find_active_by_hash", side_effect=ConnectionError("redis:6379 refused")
    )

    with pytest.raises(InternalLookupError) as exc_info:
        await authenticator.authenticate("mt_" + "a" * 48, "203.0.113.5")

    error = exc_info.value
    assert error.status_code == 500
    assert error.to_dict() == {
        "success": False,
        "error": "internal_lookup_failure",
        "message": "Authentication error",
    }
    [entry] = captured_logs.err_entries()
    assert entry["event"] == "api_key.auth.lookup_failed"
    assert entry["error"]["name"] == "ConnectionError"


@pytest.mark.asyncio
async def test_usage_update_failure_does_not_fail_request(
    memory_store: InMemoryApiKeyStore,
    rate_limiter: FixedWindowRateLimiter,
    json_logger: StructuredLogger,
    captured_logs: Any,
    issue_key: IssueKey,
    mocker: Any,
) -> None:
    """Test that counter persistence is retried, then logged, never raised."""
    issued = await issue_key()
    increment = mocker.patch.object(
        memory_store, "increment_usage", side_effect=ConnectionError("write failed")
    )
    authenticator = ApiKeyAuthenticator(
        memory_store, rate_limiter, json_logger, usage_update_max_attempts=2
    )

    result = await authenticator.authenticate(issued.plaintext, "203.0.113.5")
    await authenticator.drain()

    assert result.record.key_id == issued.record.key_id
    assert increment.call_count == 2
    assert authenticator.pending_usage_updates == 0
    assert "api_key.usage_update_failed" in [e["event"] for e in captured_logs.err_entries()]


@pytest.mark.asyncio
async def test_success_merges_owner_into_context(
    authenticator: ApiKeyAuthenticator, issue_key: IssueKey
) -> None:
    issued = await issue_key(owner_id="user_owner_7")
    ctx = begin()

    with TracingContext(ctx):
        await authenticator.authenticate(issued.plaintext, "203.0.113.5")

    assert ctx.user_id == "user_owner_7"


@pytest.mark.asyncio
async def test_attempts_logged_without_raw_credential(
    authenticator: ApiKeyAuthenticator, issue_key: IssueKey, captured_logs: Any
) -> None:
    """Test that success and failure are logged with reason codes only."""
    issued = await issue_key(ip_whitelist=["10.0.0.1"])

    with pytest.raises(IpNotAllowedError):
        await authenticator.authenticate(issued.plaintext, "10.9.9.9")
    await authenticator.authenticate(issued.plaintext, "10.0.0.1")
    with pytest.raises(InvalidKeyFormatError):
        await authenticator.authenticate("bogus_credential", "10.0.0.1")

    raw = captured_logs.stdout.getvalue() + captured_logs.stderr.getvalue()
    assert issued.plaintext not in raw
    assert "bogus_credential" not in raw

    entries = captured_logs.out_entries()
    rejected = [e for e in entries if e["event"] == "api_key.auth.rejected"]
    assert [e["data"]["reason"] for e in rejected] == ["ip_not_allowed", "invalid_api_key_format"]
    assert rejected[0]["data"]["prefix"] == issued.record.key_prefix
    assert "api_key.auth.succeeded" in [e["event"] for e in entries]


def test_check_permission() -> None:
    """Test the permission gate as a pure set-membership check."""
    record = ApiKey(
        key_id="key_perm",
        name="Perm",
        key_prefix="mt_12345678",
        key_hash="a" * 64,
        owner_id="user_1",
        permissions=["read:events"],
    )

    assert check_permission(record, "read:events") is record
    with pytest.raises(InsufficientScopeError) as exc_info:
        check_permission(record, "read:analytics")

    error = exc_info.value
    assert error.status_code == 403
    assert error.to_dict() == {
        "success": False,
        "error": "insufficient_scope",
        "message": "This API key does not have 'read:analytics' permission",
        "required": "read:analytics",
        "available": ["read:events"],
    }

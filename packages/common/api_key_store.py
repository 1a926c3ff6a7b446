"""API key storage: key generation, hashing, and the Redis/in-memory stores.

Plaintext keys exist only inside ``IssuedApiKey`` at creation or regeneration
time. Stores persist the SHA-256 hash and the display prefix.

Redis layout:
    "api_key:{key_hash}"       -> JSON serialized ApiKey (without usage counters)
    "api_key:id:{key_id}"      -> key_hash
    "api_key:owner:{owner_id}" -> set of key_ids
    "api_key:usage:{key_id}"   -> hash {count, last_used_at}
"""

import hashlib
import hmac
import secrets
import uuid
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from redis.asyncio import Redis

from packages.common.logging import StructuredLogger
from packages.schemas.api_key import (
    DEFAULT_PERMISSIONS,
    DEFAULT_RATE_LIMIT_RPM,
    KEY_DISPLAY_LEN,
    KEY_PREFIX,
    ApiKey,
    IssuedApiKey,
)


class KeyNotFoundError(LookupError):
    """Raised when a store operation targets an unknown key id."""

    def __init__(self, key_id: str) -> None:
        super().__init__(f"API key not found: {key_id}")
        self.key_id = key_id


def hash_key(plaintext: str) -> str:
    """Hash a plaintext key using SHA-256.

    Args:
        plaintext: The plaintext API key.

    Returns:
        str: SHA-256 hex digest.
    """
    return hashlib.sha256(plaintext.encode()).hexdigest()


def verify_key(plaintext: str, key_hash: str) -> bool:
    """Verify a plaintext key against a stored hash in constant time."""
    return hmac.compare_digest(hash_key(plaintext), key_hash)


def generate_key() -> tuple[str, str, str]:
    """Generate a new API key.

    Returns:
        tuple[str, str, str]: (plaintext, key_hash, key_prefix)
    """
    plaintext = f"{KEY_PREFIX}{secrets.token_hex(24)}"
    return plaintext, hash_key(plaintext), plaintext[:KEY_DISPLAY_LEN]


def _new_key_id() -> str:
    return f"key_{uuid.uuid4().hex}"


class KeyStore(Protocol):
    """Persistence contract consumed by the authenticator."""

    async def find_active_by_hash(self, key_hash: str) -> ApiKey | None: ...

    async def increment_usage(self, key_id: str, key_hash: str) -> bool: ...

    async def create(
        self,
        *,
        name: str,
        owner_id: str,
        permissions: Sequence[str] | None = None,
        rate_limit: int = DEFAULT_RATE_LIMIT_RPM,
        ip_whitelist: Sequence[str] | None = None,
        expires_at: datetime | None = None,
    ) -> IssuedApiKey: ...

    async def regenerate(self, key_id: str) -> IssuedApiKey: ...

    async def delete(self, key_id: str) -> bool: ...

    async def get(self, key_id: str) -> ApiKey | None: ...

    async def list_for_owner(self, owner_id: str) -> list[ApiKey]: ...

    async def count_for_owner(self, owner_id: str) -> int: ...

    async def set_active(self, key_id: str, active: bool) -> ApiKey: ...


def _build_record(
    *,
    name: str,
    owner_id: str,
    permissions: Iterable[str] | None,
    rate_limit: int,
    ip_whitelist: Iterable[str] | None,
    expires_at: datetime | None,
) -> IssuedApiKey:
    plaintext, key_hash, key_prefix = generate_key()
    record = ApiKey(
        key_id=_new_key_id(),
        name=name,
        key_prefix=key_prefix,
        key_hash=key_hash,
        owner_id=owner_id,
        permissions=list(permissions if permissions is not None else DEFAULT_PERMISSIONS),
        rate_limit=rate_limit,
        ip_whitelist=list(ip_whitelist or []),
        expires_at=expires_at,
    )
    return IssuedApiKey(record=record, plaintext=plaintext)


def _rotated(record: ApiKey) -> IssuedApiKey:
    plaintext, key_hash, key_prefix = generate_key()
    return IssuedApiKey(
        record=record.model_copy(
            update={"key_hash": key_hash, "key_prefix": key_prefix, "usage_count": 0}
        ),
        plaintext=plaintext,
    )


def _decode(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


# KEYS: id index, usage hash. ARGV: expected key hash, ISO timestamp.
# Returns -1 for an unknown id, 0 when the key was rotated, 1 when counted.
_INCREMENT_USAGE_LUA = """
local current = redis.call("GET", KEYS[1])
if not current then
    return -1
end
if current ~= ARGV[1] then
    return 0
end
redis.call("HINCRBY", KEYS[2], "count", 1)
redis.call("HSET", KEYS[2], "last_used_at", ARGV[2])
return 1
"""


class RedisApiKeyStore:
    """Redis-backed API key store.

    Stores API key metadata indexed by key hash for O(1) validation. Usage
    counters live in a separate hash so increments are atomic and never
    rewrite the record.
    """

    KEY_PREFIX = "api_key"

    def __init__(self, redis_client: "Redis[Any]", logger: StructuredLogger) -> None:
        """Initialize with Redis client.

        Args:
            redis_client: Async Redis client (bytes or decoded responses).
            logger: Logger for store diagnostics.
        """
        self.redis = redis_client
        self._logger = logger.child(component="key_store", backend="redis")
        self._increment_script = redis_client.register_script(_INCREMENT_USAGE_LUA)
        self._logger.db("key_store.initialized")

    def _record_key(self, key_hash: str) -> str:
        return f"{self.KEY_PREFIX}:{key_hash}"

    def _id_key(self, key_id: str) -> str:
        return f"{self.KEY_PREFIX}:id:{key_id}"

    def _owner_key(self, owner_id: str) -> str:
        return f"{self.KEY_PREFIX}:owner:{owner_id}"

    def _usage_key(self, key_id: str) -> str:
        return f"{self.KEY_PREFIX}:usage:{key_id}"

    @staticmethod
    def _serialize(record: ApiKey) -> str:
        return record.model_dump_json(exclude={"usage_count", "last_used_at"})

    async def _with_usage(self, record: ApiKey) -> ApiKey:
        usage = await self.redis.hgetall(self._usage_key(record.key_id))
        if not usage:
            return record
        decoded = {_decode(k): _decode(v) for k, v in usage.items()}
        last_used = decoded.get("last_used_at")
        return record.model_copy(
            update={
                "usage_count": int(decoded.get("count", 0)),
                "last_used_at": datetime.fromisoformat(last_used) if last_used else None,
            }
        )

    async def _load_by_hash(self, key_hash: str) -> ApiKey | None:
        value = await self.redis.get(self._record_key(key_hash))
        if not value:
            return None
        return ApiKey.model_validate_json(_decode(value))

    async def find_active_by_hash(self, key_hash: str) -> ApiKey | None:
        """Get an active API key by hash.

        Args:
            key_hash: SHA-256 hash of the candidate key.

        Returns:
            ApiKey if found and active, None otherwise.
        """
        record = await self._load_by_hash(key_hash)
        if record is None:
            self._logger.db("key_store.miss", {"hash_prefix": key_hash[:8]})
            return None
        if not record.is_active:
            self._logger.db("key_store.inactive", {"record_id": record.key_id})
            return None
        return await self._with_usage(record)

    async def get(self, key_id: str) -> ApiKey | None:
        key_hash = await self.redis.get(self._id_key(key_id))
        if not key_hash:
            return None
        record = await self._load_by_hash(_decode(key_hash))
        if record is None:
            return None
        return await self._with_usage(record)

    async def _require(self, key_id: str) -> ApiKey:
        record = await self.get(key_id)
        if record is None:
            raise KeyNotFoundError(key_id)
        return record

    async def increment_usage(self, key_id: str, key_hash: str) -> bool:
        """Atomically bump the usage counter and last-used timestamp.

        The bump is skipped when ``key_hash`` is no longer the key's current
        hash, so a late update from a rotated secret cannot count against
        the new one.

        Returns:
            bool: False if the update was skipped.

        Raises:
            KeyNotFoundError: If ``key_id`` is unknown.
        """
        result = await self._increment_script(
            keys=[self._id_key(key_id), self._usage_key(key_id)],
            args=[key_hash, datetime.now(UTC).isoformat()],
        )
        if int(result) < 0:
            raise KeyNotFoundError(key_id)
        return bool(int(result))

    async def create(
        self,
        *,
        name: str,
        owner_id: str,
        permissions: Sequence[str] | None = None,
        rate_limit: int = DEFAULT_RATE_LIMIT_RPM,
        ip_whitelist: Sequence[str] | None = None,
        expires_at: datetime | None = None,
    ) -> IssuedApiKey:
        """Issue a new key and persist its record.

        Returns:
            IssuedApiKey: The record plus the plaintext (shown once).
        """
        issued = _build_record(
            name=name,
            owner_id=owner_id,
            permissions=permissions,
            rate_limit=rate_limit,
            ip_whitelist=ip_whitelist,
            expires_at=expires_at,
        )
        record = issued.record
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._record_key(record.key_hash), self._serialize(record))
            pipe.set(self._id_key(record.key_id), record.key_hash)
            pipe.sadd(self._owner_key(record.owner_id), record.key_id)
            await pipe.execute()
        self._logger.info(
            "key_store.created",
            {"record_id": record.key_id, "prefix": record.key_prefix, "owner_id": owner_id},
        )
        return issued

    async def regenerate(self, key_id: str) -> IssuedApiKey:
        """Rotate a key's secret; the old plaintext stops working immediately.

        Raises:
            KeyNotFoundError: If ``key_id`` is unknown.
        """
        current = await self._require(key_id)
        issued = _rotated(current)
        record = issued.record
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._record_key(current.key_hash))
            pipe.set(self._record_key(record.key_hash), self._serialize(record))
            pipe.set(self._id_key(key_id), record.key_hash)
            pipe.hset(self._usage_key(key_id), "count", 0)
            await pipe.execute()
        self._logger.info(
            "key_store.regenerated", {"record_id": key_id, "prefix": record.key_prefix}
        )
        return issued

    async def delete(self, key_id: str) -> bool:
        record = await self.get(key_id)
        if record is None:
            return False
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._record_key(record.key_hash))
            pipe.delete(self._id_key(key_id))
            pipe.delete(self._usage_key(key_id))
            pipe.srem(self._owner_key(record.owner_id), key_id)
            await pipe.execute()
        self._logger.info("key_store.deleted", {"record_id": key_id})
        return True

    async def list_for_owner(self, owner_id: str) -> list[ApiKey]:
        key_ids = await self.redis.smembers(self._owner_key(owner_id))
        records = []
        for key_id in sorted(_decode(k) for k in key_ids):
            record = await self.get(key_id)
            if record is not None:
                records.append(record)
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def count_for_owner(self, owner_id: str) -> int:
        return int(await self.redis.scard(self._owner_key(owner_id)))

    async def set_active(self, key_id: str, active: bool) -> ApiKey:
        record = (await self._require(key_id)).model_copy(update={"is_active": active})
        await self.redis.set(self._record_key(record.key_hash), self._serialize(record))
        self._logger.info("key_store.status_changed", {"record_id": key_id, "active": active})
        return record


class InMemoryApiKeyStore:
    """Process-local store with the same semantics as ``RedisApiKeyStore``.

    Used for local development (``KEY_STORE_BACKEND=memory``) and tests.
    Methods never await between reading and writing, so they are atomic on
    the event loop.
    """

    def __init__(self, logger: StructuredLogger | None = None) -> None:
        self._records: dict[str, ApiKey] = {}
        self._ids_by_hash: dict[str, str] = {}
        self._logger = logger.child(component="key_store", backend="memory") if logger else None

    def _log(self, event: str, data: dict[str, Any]) -> None:
        if self._logger is not None:
            self._logger.info(event, data)

    async def find_active_by_hash(self, key_hash: str) -> ApiKey | None:
        key_id = self._ids_by_hash.get(key_hash)
        if key_id is None:
            return None
        record = self._records[key_id]
        return record if record.is_active else None

    async def get(self, key_id: str) -> ApiKey | None:
        return self._records.get(key_id)

    def _require(self, key_id: str) -> ApiKey:
        record = self._records.get(key_id)
        if record is None:
            raise KeyNotFoundError(key_id)
        return record

    async def increment_usage(self, key_id: str, key_hash: str) -> bool:
        record = self._require(key_id)
        if record.key_hash != key_hash:
            return False
        self._records[key_id] = record.model_copy(
            update={"usage_count": record.usage_count + 1, "last_used_at": datetime.now(UTC)}
        )
        return True

    async def create(
        self,
        *,
        name: str,
        owner_id: str,
        permissions: Sequence[str] | None = None,
        rate_limit: int = DEFAULT_RATE_LIMIT_RPM,
        ip_whitelist: Sequence[str] | None = None,
        expires_at: datetime | None = None,
    ) -> IssuedApiKey:
        issued = _build_record(
            name=name,
            owner_id=owner_id,
            permissions=permissions,
            rate_limit=rate_limit,
            ip_whitelist=ip_whitelist,
            expires_at=expires_at,
        )
        self.add(issued.record)
        self._log(
            "key_store.created",
            {"record_id": issued.record.key_id, "prefix": issued.record.key_prefix},
        )
        return issued

    def add(self, record: ApiKey) -> None:
        """Insert a prepared record (seeding from fixtures or config)."""
        self._records[record.key_id] = record
        self._ids_by_hash[record.key_hash] = record.key_id

    async def regenerate(self, key_id: str) -> IssuedApiKey:
        current = self._require(key_id)
        issued = _rotated(current)
        del self._ids_by_hash[current.key_hash]
        self.add(issued.record)
        self._log("key_store.regenerated", {"record_id": key_id, "prefix": issued.record.key_prefix})
        return issued

    async def delete(self, key_id: str) -> bool:
        record = self._records.pop(key_id, None)
        if record is None:
            return False
        self._ids_by_hash.pop(record.key_hash, None)
        self._log("key_store.deleted", {"record_id": key_id})
        return True

    async def list_for_owner(self, owner_id: str) -> list[ApiKey]:
        records = [r for r in self._records.values() if r.owner_id == owner_id]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    async def count_for_owner(self, owner_id: str) -> int:
        return sum(1 for r in self._records.values() if r.owner_id == owner_id)

    async def set_active(self, key_id: str, active: bool) -> ApiKey:
        record = self._require(key_id).model_copy(update={"is_active": active})
        self._records[key_id] = record
        self._log("key_store.status_changed", {"record_id": key_id, "active": active})
        return record


__all__ = [
    "InMemoryApiKeyStore",
    "KeyNotFoundError",
    "KeyStore",
    "RedisApiKeyStore",
    "generate_key",
    "hash_key",
    "verify_key",
]

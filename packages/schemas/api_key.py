"""API key schema for authentication."""

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field, field_validator

KEY_PREFIX = "mt_"
KEY_DISPLAY_LEN = 11  # "mt_" + 8 chars, safe to show in UIs and logs
MAX_KEYS_PER_OWNER = 5
DEFAULT_RATE_LIMIT_RPM = 60
DEFAULT_PERMISSIONS: tuple[str, ...] = (
    "read:events",
    "read:registrations",
    "read:analytics",
    "read:tickets",
)


class OwnerType(StrEnum):
    """Kind of principal owning a key."""

    USER = "user"


class ApiKey(BaseModel):
    """API key record.

    The plaintext key is never part of the record; only its SHA-256 hash and
    a short display prefix are kept.

    Attributes:
        key_id: Unique key identifier.
        name: Human-readable key name.
        key_prefix: First characters of the plaintext key (e.g. 'mt_1a2b3c4d').
        key_hash: SHA-256 hash of the plaintext key.
        owner_id: Identifier of the owning principal.
        owner_type: Kind of owner (only 'user' today).
        permissions: Ordered, de-duplicated permission scopes.
        rate_limit: Requests per minute quota (0 denies every request).
        ip_whitelist: Allowed client IPs; empty means unrestricted.
        usage_count: Cumulative successful authentications.
        last_used_at: Timestamp of the last successful authentication.
        is_active: Whether the key may authenticate.
        expires_at: Optional expiry timestamp.
        created_at: Key creation timestamp.
    """

    key_id: str = Field(..., min_length=1, max_length=128)
    name: str = Field(..., min_length=1, max_length=256)
    key_prefix: str = Field(..., min_length=len(KEY_PREFIX), max_length=32)
    key_hash: str = Field(..., min_length=64, max_length=64)
    owner_id: str = Field(..., min_length=1)
    owner_type: OwnerType = OwnerType.USER
    permissions: list[str] = Field(default_factory=lambda: list(DEFAULT_PERMISSIONS))
    rate_limit: int = Field(default=DEFAULT_RATE_LIMIT_RPM, ge=0, le=10000)
    ip_whitelist: list[str] = Field(default_factory=list)
    usage_count: int = Field(default=0, ge=0)
    last_used_at: datetime | None = None
    is_active: bool = True
    expires_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("key_hash")
    @classmethod
    def validate_key_hash_hex(cls, v: str) -> str:
        """Validate that key_hash is 64 hexadecimal characters.

        Args:
            v: The key hash value.

        Returns:
            str: The validated, lower-cased key hash.

        Raises:
            ValueError: If key_hash is not valid.
        """
        if len(v) != 64:
            raise ValueError("key_hash must be exactly 64 characters")
        if not all(c in "0123456789abcdefABCDEF" for c in v):
            raise ValueError("key_hash must be 64 hexadecimal characters")
        return v.lower()

    @field_validator("key_prefix")
    @classmethod
    def validate_key_prefix(cls, v: str) -> str:
        if not v.startswith(KEY_PREFIX):
            raise ValueError(f"key_prefix must start with {KEY_PREFIX}")
        return v

    @field_validator("permissions")
    @classmethod
    def dedupe_permissions(cls, v: list[str]) -> list[str]:
        # dict keeps first-seen order
        return list(dict.fromkeys(scope.strip() for scope in v if scope.strip()))

    def is_expired(self, now: datetime | None = None) -> bool:
        """Return True once ``expires_at`` has passed."""
        if self.expires_at is None:
            return False
        now = now or datetime.now(UTC)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return now >= expires_at

    def has_permission(self, scope: str) -> bool:
        return scope in self.permissions

    def public_view(self) -> dict[str, object]:
        """Return the record without its hash, for API responses."""
        return self.model_dump(mode="json", exclude={"key_hash"})


class IssuedApiKey(BaseModel):
    """A freshly created or regenerated key.

    ``plaintext`` is the only place the full key ever exists; it must be
    shown to the owner once and then discarded.
    """

    record: ApiKey
    plaintext: str


__all__ = [
    "DEFAULT_PERMISSIONS",
    "DEFAULT_RATE_LIMIT_RPM",
    "KEY_DISPLAY_LEN",
    "KEY_PREFIX",
    "MAX_KEYS_PER_OWNER",
    "ApiKey",
    "IssuedApiKey",
    "OwnerType",
]

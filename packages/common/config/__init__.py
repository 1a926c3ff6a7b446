"""Configuration management for the MakeTicket API gateway.

Loads environment variables using pydantic-settings for type-safe configuration.
Covers the request pipeline: logging, API key storage, rate limiting and the
HTTP service itself.
"""

import os
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_LOADED = False
_ENV_LOCK = Lock()

LOG_LEVEL_NAMES = frozenset(
    {"TRACE", "DEBUG", "INFO", "WARN", "WARNING", "ERROR", "FATAL", "CRITICAL"}
)


def _resolve_env_file() -> str | None:
    """Locate the .env file regardless of the current working directory.

    Preference order:
        1. MAKETICKET_ENV_FILE environment variable (explicit override)
        2. Current working directory (common for local runs)
        3. Ancestors of this file (covers package execution within Docker)
    """
    override = os.getenv("MAKETICKET_ENV_FILE")
    if override:
        override_path = Path(override).expanduser()
        if override_path.is_file():
            return str(override_path)

    cwd_candidate = Path.cwd() / ".env"
    if cwd_candidate.is_file():
        return str(cwd_candidate)

    for parent in Path(__file__).resolve().parents:
        candidate = parent / ".env"
        if candidate.is_file():
            return str(candidate)

    return None


_DEFAULT_ENV_FILE = _resolve_env_file()


def ensure_env_loaded() -> None:
    """Load environment variables from disk exactly once."""
    global _ENV_LOADED

    with _ENV_LOCK:
        if _ENV_LOADED:
            return

        env_path = _DEFAULT_ENV_FILE or _resolve_env_file()
        if env_path:
            load_dotenv(env_path, override=False)

        _ENV_LOADED = True


ensure_env_loaded()


class MakeTicketConfig(BaseSettings):
    """Main configuration class for the API gateway.

    Loads service identity, storage, rate limiting and logging settings from
    environment variables. Uses pydantic-settings for validation and type safety.
    """

    model_config = SettingsConfigDict(
        env_file=_DEFAULT_ENV_FILE,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========== Service Identity ==========
    service_name: str = "maketicket-api"
    environment: str = "development"

    # ========== Observability ==========
    log_level: str | None = None  # Defaults to INFO in production, DEBUG elsewhere
    log_color: bool = True

    # ========== API Key Storage ==========
    key_store_backend: Literal["redis", "memory"] = "redis"
    redis_url: str = "redis://localhost:6379"
    redis_password: SecretStr | None = None
    redis_max_connections: int = 100
    redis_socket_timeout: int = 10

    # ========== Rate Limiting ==========
    rate_limit_window_seconds: int = Field(default=60, ge=1)
    rate_limit_storage_uri: str = "memory://"  # any limits storage URI, e.g. redis://host:6379/1

    # ========== Usage Counters ==========
    usage_update_max_attempts: int = Field(default=3, ge=1, le=10)

    # ========== API Service ==========
    host: str = "0.0.0.0"
    http_port: int = 8000
    trust_forwarded_for: bool = False
    cors_allow_origins: list[str] = [
        "http://localhost:3000",
    ]  # Override via CORS_ALLOW_ORIGINS env var (JSON list)

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        return value.strip().lower() or "development"

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        normalized = value.strip().upper()
        if normalized not in LOG_LEVEL_NAMES:
            raise ValueError(f"Unknown log level: {value}")
        return normalized

    @property
    def is_production(self) -> bool:
        """True when running with the production environment name."""
        return self.environment == "production"

    @property
    def effective_log_level(self) -> str:
        """Explicit log level, or the environment default (INFO in production)."""
        if self.log_level:
            return self.log_level
        return "INFO" if self.is_production else "DEBUG"


@lru_cache(maxsize=1)
def get_config() -> MakeTicketConfig:
    """Return cached Settings instance (thread-safe, process-local).

    Uses lru_cache to ensure a single instance is created and reused.

    Returns:
        MakeTicketConfig: The configuration instance loaded from environment variables.
    """
    return MakeTicketConfig()


# Export convenience accessors
__all__ = ["LOG_LEVEL_NAMES", "MakeTicketConfig", "ensure_env_loaded", "get_config"]

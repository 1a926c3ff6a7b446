"""Shared pytest fixtures for the MakeTicket test suite.

Provides test configurations, an in-memory key store, a logger writing to
in-memory streams, and a controllable clock for the rate limiter.
"""

import io
import json
import logging
import time
from collections.abc import Awaitable, Callable, Iterator
from typing import Any
from uuid import uuid4

import pytest

from packages.common.api_key_store import InMemoryApiKeyStore
from packages.common.config import MakeTicketConfig
from packages.common.logging import StructuredLogger, configure_logging, shutdown_logging
from packages.schemas.api_key import IssuedApiKey

# ========== Configuration Fixtures ==========


@pytest.fixture
def test_config() -> MakeTicketConfig:
    """Provide development-mode configuration with the in-memory key store.

    Returns:
        MakeTicketConfig: Configuration instance for testing.
    """
    return MakeTicketConfig(
        service_name="maketicket-api-test",
        environment="test",
        key_store_backend="memory",
        log_color=False,
        cors_allow_origins=["http://localhost:3000"],
    )


@pytest.fixture
def production_config() -> MakeTicketConfig:
    """Provide production configuration (JSON logs, INFO threshold)."""
    return MakeTicketConfig(
        service_name="maketicket-api-test",
        environment="production",
        key_store_backend="memory",
    )


# ========== Logging Fixtures ==========


class CapturedLogs:
    """In-memory stdout/stderr pair with JSON-line helpers."""

    def __init__(self) -> None:
        self.stdout = io.StringIO()
        self.stderr = io.StringIO()

    @staticmethod
    def _entries(stream: io.StringIO) -> list[dict[str, Any]]:
        return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]

    def out_entries(self) -> list[dict[str, Any]]:
        return self._entries(self.stdout)

    def err_entries(self) -> list[dict[str, Any]]:
        return self._entries(self.stderr)

    def entries(self) -> list[dict[str, Any]]:
        return self.out_entries() + self.err_entries()

    def events(self) -> list[str]:
        return [entry["event"] for entry in self.entries()]


@pytest.fixture
def captured_logs() -> CapturedLogs:
    return CapturedLogs()


@pytest.fixture
def json_logger(
    production_config: MakeTicketConfig, captured_logs: CapturedLogs
) -> Iterator[StructuredLogger]:
    """Production-mode logger bound to a private ``logging.Logger``.

    Yields:
        StructuredLogger: Logger whose JSON output lands in ``captured_logs``.
    """
    target = logging.getLogger(f"tests.maketicket.{uuid4().hex[:8]}")
    logger = configure_logging(
        production_config,
        target=target,
        stdout=captured_logs.stdout,
        stderr=captured_logs.stderr,
    )
    yield logger
    shutdown_logging(target)


# ========== Key Store Fixtures ==========


@pytest.fixture
def memory_store() -> InMemoryApiKeyStore:
    """Provide an empty in-memory key store."""
    return InMemoryApiKeyStore()


@pytest.fixture
def issue_key(memory_store: InMemoryApiKeyStore) -> Callable[..., Awaitable[IssuedApiKey]]:
    """Factory issuing keys in ``memory_store``.

    Example:
        >>> issued = await issue_key(rate_limit=2)
    """

    async def _issue(**kwargs: Any) -> IssuedApiKey:
        defaults: dict[str, Any] = {"name": "Test Key", "owner_id": "user_test"}
        defaults.update(kwargs)
        return await memory_store.create(**defaults)

    return _issue


# ========== Clock Fixtures ==========


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    """Patch ``time.time`` so the rate limiter and its storage follow the clock."""
    clock = FakeClock()
    monkeypatch.setattr(time, "time", clock)
    return clock


# ========== Pytest Configuration ==========


def pytest_configure(config: Any) -> None:
    """Configure pytest markers.

    Args:
        config: pytest config object.
    """
    config.addinivalue_line(
        "markers",
        "integration: Integration tests requiring a reachable Redis server",
    )

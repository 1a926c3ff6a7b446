"""Fixtures for API tests."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Any
from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from apps.api.app import create_app
from packages.common.api_key_store import InMemoryApiKeyStore, generate_key
from packages.common.config import MakeTicketConfig
from packages.schemas.api_key import ApiKey

SeedKey = Callable[..., tuple[str, ApiKey]]


@pytest.fixture
def api_store() -> InMemoryApiKeyStore:
    """Key store injected into the app under test."""
    return InMemoryApiKeyStore()


@pytest.fixture
def seed_key(api_store: InMemoryApiKeyStore) -> SeedKey:
    """Insert a key record synchronously and return (plaintext, record).

    Example:
        >>> plaintext, record = seed_key(rate_limit=2, permissions=["read:events"])
    """

    def _seed(**overrides: Any) -> tuple[str, ApiKey]:
        plaintext, key_hash, key_prefix = generate_key()
        fields: dict[str, Any] = {
            "key_id": f"key_{uuid4().hex[:12]}",
            "name": "API Test Key",
            "key_prefix": key_prefix,
            "key_hash": key_hash,
            "owner_id": "user_api",
        }
        fields.update(overrides)
        record = ApiKey(**fields)
        api_store.add(record)
        return plaintext, record

    return _seed


@pytest.fixture
def app(test_config: MakeTicketConfig, api_store: InMemoryApiKeyStore) -> FastAPI:
    """Create the FastAPI app with the in-memory key store."""
    return create_app(test_config, key_store=api_store)


@pytest.fixture
def client(app: FastAPI) -> Iterator[TestClient]:
    """Create FastAPI TestClient for API tests.

    The context manager runs the lifespan, so the logger, rate limiter and
    authenticator exist on app state.
    """
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def proxied_client(test_config: MakeTicketConfig, api_store: InMemoryApiKeyStore) -> Iterator[TestClient]:
    """TestClient for an app that trusts X-Forwarded-For."""
    config = test_config.model_copy(update={"trust_forwarded_for": True})
    with TestClient(create_app(config, key_store=api_store)) as test_client:
        yield test_client

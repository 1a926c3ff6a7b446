"""Dependency injection helpers for the API layer."""

from __future__ import annotations

from .auth import ApiKeyDep, authenticate_api_key, get_authenticator, require_permission

__all__ = [
    "ApiKeyDep",
    "authenticate_api_key",
    "get_authenticator",
    "require_permission",
]

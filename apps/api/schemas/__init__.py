"""Shared Pydantic schemas for the API."""

from __future__ import annotations

from .envelope import ResponseEnvelope

__all__ = ["ResponseEnvelope"]

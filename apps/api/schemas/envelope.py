"""Response envelope shared by all JSON endpoints."""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ResponseEnvelope(BaseModel, Generic[T]):
    """Uniform success wrapper.

    Error responses from the API key pipeline use the flat
    ``{"success": false, "error": ..., "message": ...}`` shape instead.
    """

    success: bool = True
    data: T | None = None
    error: str | None = None


__all__ = ["ResponseEnvelope"]

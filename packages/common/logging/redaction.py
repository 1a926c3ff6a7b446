"""Redaction of sensitive data before it reaches a log sink.

Two passes, applied recursively:

- key-based: any mapping entry whose key contains a sensitive keyword
  (case-insensitive) has its value replaced by ``REDACTED``, whatever its type;
- pattern-based: remaining strings get email local parts and long digit runs
  masked.

Recursion is capped at ``MAX_DEPTH`` levels, which also bounds cyclic inputs.
Redacting an already-redacted value returns it unchanged.
"""

import re
from collections.abc import Mapping
from dataclasses import fields, is_dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

REDACTED = "[REDACTED]"
MAX_DEPTH_MARKER = "[MAX_DEPTH]"
EMAIL_LOCAL_MASK = "***"
MAX_DEPTH = 10

SENSITIVE_KEYWORDS: frozenset[str] = frozenset(
    {
        "password",
        "token",
        "secret",
        "key",
        "authorization",
        "cookie",
        "credit_card",
        "creditcard",
        "cvv",
        "ssn",
        "api_key",
        "apikey",
        "private_key",
        "privatekey",
        "access_token",
        "accesstoken",
        "refresh_token",
        "refreshtoken",
        "jwt",
        "bearer",
        "credentials",
        "pin",
        "otp",
        "verification_code",
    }
)

_EMAIL_PATTERN = re.compile(r"\b([A-Za-z0-9._%+-]+)@([A-Za-z0-9.-]+\.[A-Za-z]{2,})\b")
_DIGIT_RUN_PATTERN = re.compile(r"\b\d{10,16}\b")


def is_sensitive_key(key: object) -> bool:
    """Return True if ``key`` equals or contains a sensitive keyword."""
    lowered = str(key).lower()
    if lowered in SENSITIVE_KEYWORDS:
        return True
    return any(keyword in lowered for keyword in SENSITIVE_KEYWORDS)


def _mask_digits(match: re.Match[str]) -> str:
    digits = match.group(0)
    return "*" * (len(digits) - 4) + digits[-4:]


def redact_string(value: str) -> str:
    """Mask email local parts (domain kept) and 10-16 digit runs (last 4 kept)."""
    result = _EMAIL_PATTERN.sub(lambda m: f"{EMAIL_LOCAL_MASK}@{m.group(2)}", value)
    return _DIGIT_RUN_PATTERN.sub(_mask_digits, result)


def redact(value: Any, depth: int = 0) -> Any:
    """Return a redacted copy of ``value``.

    Mappings become dicts, sequences and sets become lists. Pydantic models,
    dataclasses and plain objects are converted to mappings first. Anything
    else is stringified and pattern-redacted.

    Args:
        value: Arbitrary log payload.
        depth: Current nesting level (callers leave the default).

    Returns:
        Any: Redacted copy, safe to serialize.

    Example:
        >>> redact({"password": "hunter2", "contact": "jane@example.com"})
        {'password': '[REDACTED]', 'contact': '***@example.com'}
    """
    if depth > MAX_DEPTH:
        return MAX_DEPTH_MARKER

    if value is None or isinstance(value, bool | int | float):
        return value

    if isinstance(value, str):
        return redact_string(value)

    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")

    if isinstance(value, Mapping):
        redacted: dict[str, Any] = {}
        for key, item in value.items():
            name = str(key)
            if is_sensitive_key(name):
                redacted[name] = REDACTED
            else:
                redacted[name] = redact(item, depth + 1)
        return redacted

    if isinstance(value, list | tuple | set | frozenset):
        return [redact(item, depth + 1) for item in value]

    if isinstance(value, bytes | bytearray):
        return f"<{len(value)} bytes>"

    if isinstance(value, datetime | date):
        return value.isoformat()

    if isinstance(value, Enum):
        return redact(value.value, depth)

    if is_dataclass(value) and not isinstance(value, type):
        return redact({f.name: getattr(value, f.name) for f in fields(value)}, depth)

    if (
        hasattr(value, "__dict__")
        and not isinstance(value, type | BaseException)
        and not callable(value)
    ):
        return redact(vars(value), depth)

    return redact_string(str(value))


__all__ = [
    "EMAIL_LOCAL_MASK",
    "MAX_DEPTH",
    "MAX_DEPTH_MARKER",
    "REDACTED",
    "SENSITIVE_KEYWORDS",
    "is_sensitive_key",
    "redact",
    "redact_string",
]

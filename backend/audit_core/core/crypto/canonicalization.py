"""Canonicalization helpers for stable cross-store signing."""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

import rfc8785

CANONICALIZATION_RFC8785 = "rfc8785"

# Largest integer an IEEE-754 double represents exactly; JCS refuses anything wider
MAX_SAFE_INTEGER = 2**53 - 1


def canonicalize_jcs_bytes(data: Any) -> bytes:
    """Return RFC 8785 (JCS) canonical bytes."""
    canonical = rfc8785.dumps(data)
    if isinstance(canonical, bytes):
        return canonical
    return str(canonical).encode("utf-8")


def normalize_timestamp(value: datetime) -> str:
    """Render a timestamp as naive UTC ISO-8601 with microsecond precision.

    Stores disagree on whether a ``DateTime(timezone=True)`` column comes back
    aware (PostgreSQL) or naive (SQLite); both must sign identically.
    """
    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return value.isoformat(timespec="microseconds")


def normalize_value(value: Any) -> Any:
    """Reduce a value to JSON primitives accepted by JCS."""
    if value is None or isinstance(value, bool | str):
        return value
    if isinstance(value, int):
        return value if abs(value) <= MAX_SAFE_INTEGER else str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return str(value)
        if value.is_integer() and abs(value) <= MAX_SAFE_INTEGER:
            return int(value)
        return value
    if isinstance(value, datetime):
        return normalize_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return normalize_value(value.value)
    if isinstance(value, UUID | Decimal):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): normalize_value(item) for key, item in value.items()}
    if isinstance(value, list | tuple | set | frozenset):
        items = [normalize_value(item) for item in value]
        return sorted(items, key=repr) if isinstance(value, set | frozenset) else items
    return str(value)

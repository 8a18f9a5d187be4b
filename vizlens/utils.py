"""Shared utility functions used across vizlens modules."""
from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how the DateTime columns store values."""
    return datetime.now(UTC).replace(tzinfo=None)


def seconds_between(earlier: datetime, later: datetime) -> float:
    if earlier.tzinfo is not None:
        earlier = earlier.astimezone(UTC).replace(tzinfo=None)
    if later.tzinfo is not None:
        later = later.astimezone(UTC).replace(tzinfo=None)
    return (later - earlier).total_seconds()

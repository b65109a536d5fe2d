"""Timestamp helpers shared by the store, merge engine and wire codecs."""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Any

EPOCH = datetime(1970, 1, 1)


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(UTC).replace(tzinfo=None)


def epoch_millis() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a stored or wire timestamp into a naive UTC datetime.

    Accepts ISO-8601 strings with either a ``T`` or a space separator, an
    optional ``Z`` suffix or numeric offset, ``datetime`` objects, and epoch
    milliseconds. Returns None for empty or unparsable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, int | float):
        parsed = datetime.fromtimestamp(value / 1000, UTC)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC).replace(tzinfo=None)
    return parsed


def format_timestamp(value: datetime) -> str:
    """Render a datetime in the storage format (naive UTC, ISO-8601)."""
    if value.tzinfo is not None:
        value = value.astimezone(UTC).replace(tzinfo=None)
    return value.isoformat()

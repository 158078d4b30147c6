"""UTC time helpers shared by the store and the orchestration loops."""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Normalize a timestamp to aware UTC, treating naive values as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: datetime | None) -> str | None:
    """Return an ISO-8601 UTC string or None when missing."""
    normalized = ensure_utc(value)
    if normalized is None:
        return None
    return normalized.isoformat()

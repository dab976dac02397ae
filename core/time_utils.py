from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def utc_now_iso() -> str:
    return to_iso(utc_now()) or ""


def cutoff_before(seconds: float, *, now: Optional[datetime] = None) -> datetime:
    """Return the UTC instant `seconds` before `now` (used for staleness windows)."""
    return (now or utc_now()) - timedelta(seconds=max(0.0, float(seconds)))

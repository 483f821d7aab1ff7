"""Timezone helpers shared by aggregates, projections and the API."""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from healz.core.config import settings


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""

    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Coerce a datetime into UTC timezone-aware form."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""

    return ensure_utc(datetime.fromisoformat(value))


def clinic_timezone(tz_name: str | None) -> ZoneInfo:
    """Return the clinic timezone, falling back to application default."""

    try:
        return ZoneInfo(tz_name or settings.timezone)
    except ZoneInfoNotFoundError:
        return ZoneInfo("UTC")

"""WhatsApp customer-service window per contact, kept in Redis."""

from __future__ import annotations

from datetime import datetime, timedelta
from functools import lru_cache
from typing import Final

import redis

from healz.core.clock import ensure_utc, parse_iso, utcnow
from healz.core.config import settings

WHATSAPP_SESSION_WINDOW: Final[timedelta] = timedelta(hours=24)

_WINDOW_KEY_TEMPLATE: Final[str] = "healz:wa:window:{phone}"


@lru_cache(maxsize=1)
def _get_client() -> redis.Redis:
    return redis.Redis.from_url(settings.redis_url, decode_responses=True)


def _key(phone_e164: str) -> str:
    return _WINDOW_KEY_TEMPLATE.format(phone=phone_e164)


def record_last_interaction(phone_e164: str, timestamp: datetime) -> None:
    """Open or extend the window from a patient message received at ``timestamp``.

    The key expires together with the window. Webhooks may arrive out of
    order, so an older message never shortens a window already recorded.
    """

    received = ensure_utc(timestamp)
    remaining = received + WHATSAPP_SESSION_WINDOW - utcnow()
    if remaining <= timedelta(0):
        return

    client = _get_client()
    current = client.get(_key(phone_e164))
    if current and parse_iso(current) >= received:
        return
    client.set(_key(phone_e164), received.isoformat(), ex=max(1, int(remaining.total_seconds())))


def last_interaction(phone_e164: str) -> datetime | None:
    raw_value = _get_client().get(_key(phone_e164))
    if not raw_value:
        return None
    try:
        return parse_iso(raw_value)
    except ValueError:
        return None


def session_window_open(phone_e164: str, reference: datetime) -> bool:
    """Free-form messages are only allowed within 24h of the patient's last message."""

    last_seen = last_interaction(phone_e164)
    if last_seen is None:
        return False
    elapsed = ensure_utc(reference) - last_seen
    return timedelta(0) <= elapsed <= WHATSAPP_SESSION_WINDOW

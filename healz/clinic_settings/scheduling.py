"""Booking rules derived from a clinic's scheduling section."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import date, datetime, timedelta, tzinfo

from healz.clinic_settings.schemas import SchedulingSettings, TimeRange
from healz.core.clock import ensure_utc
from healz.event_sourcing.errors import InvariantViolation


def _fits(window: TimeRange, start: datetime, end: datetime) -> bool:
    return (
        start.date() == end.date()
        and window.opens <= start.time()
        and end.time() <= window.closes
    )


def _overlaps(window: TimeRange, start: datetime, end: datetime) -> bool:
    return start.time() < window.closes and window.opens < end.time()


def check_booking_rules(
    rules: SchedulingSettings,
    *,
    start: datetime,
    duration: int,
    tz: tzinfo,
    now: datetime,
) -> None:
    """Raise ``InvariantViolation`` when the slot breaks a scheduling rule."""

    start = ensure_utc(start)
    now = ensure_utc(now)
    if start < now + timedelta(hours=rules.minimum_advance_hours):
        raise InvariantViolation(
            f"Appointments need at least {rules.minimum_advance_hours} hours of notice"
        )
    if start > now + timedelta(days=rules.max_future_days):
        raise InvariantViolation(
            f"Appointments can be booked at most {rules.max_future_days} days ahead"
        )

    local_start = start.astimezone(tz)
    local_end = local_start + timedelta(minutes=duration)
    day = rules.day(local_start.weekday())
    if day is None or not day.is_open:
        raise InvariantViolation("Clinic is closed on that day")
    if not any(_fits(slot, local_start, local_end) for slot in day.time_slots):
        raise InvariantViolation("Time is outside the clinic operating hours")

    for block in rules.specific_blocks:
        if block.date == local_start.date() and _overlaps(block, local_start, local_end):
            raise InvariantViolation(
                f"Clinic is unavailable at that time ({block.reason or 'blocked'})"
            )


def candidate_starts(
    rules: SchedulingSettings,
    day: date,
    tz: tzinfo,
    duration: int,
) -> Iterator[datetime]:
    """Yield UTC starts on the default grid whose ``duration`` fits an opening window."""

    entry = rules.day(day.weekday())
    if entry is None or not entry.is_open:
        return
    step = timedelta(minutes=rules.default_appointment_duration)
    length = timedelta(minutes=duration)
    for window in entry.time_slots:
        cursor = datetime.combine(day, window.opens, tzinfo=tz)
        closes = datetime.combine(day, window.closes, tzinfo=tz)
        while cursor + length <= closes:
            yield ensure_utc(cursor)
            cursor += step

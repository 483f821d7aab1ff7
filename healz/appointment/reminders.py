"""Schedules patient reminders when an appointment time is set."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session

from healz.appointment.aggregate import APPOINTMENT_RESCHEDULED, APPOINTMENT_SCHEDULED
from healz.core.clock import parse_iso, utcnow
from healz.core.config import settings
from healz.event_sourcing.domain_event import DomainEvent
from healz.event_sourcing.event_bus import EventBus

logger = logging.getLogger(__name__)

Enqueue = Callable[[str, dict[str, Any], datetime], Any]

REMINDER_TASKS: tuple[tuple[str, timedelta], ...] = (
    ("jobs.send_reminder_d1", timedelta(days=1)),
    ("jobs.send_reminder_h2", timedelta(hours=2)),
)
NO_SHOW_TASK = "jobs.flag_no_show"
NO_SHOW_GRACE = timedelta(hours=1)


class ReminderScheduler:
    """Enqueue D-1 and H-2 reminders and the no-show follow-up.

    Reminders whose time has already passed are skipped. The worker
    re-checks the appointment before sending, so reminders left over from
    a reschedule or cancellation are dropped there.
    """

    def __init__(self, enqueue: Enqueue) -> None:
        self.enqueue = enqueue

    def register(self, bus: EventBus) -> None:
        bus.subscribe(APPOINTMENT_SCHEDULED, self.handle)
        bus.subscribe(APPOINTMENT_RESCHEDULED, self.handle)

    def handle(self, session: Session, event: DomainEvent) -> None:
        if not settings.reminders_enabled:
            return

        data = event.event_data
        raw_start = data.get("new_scheduled_at") or data["scheduled_at"]
        start = parse_iso(raw_start)
        now = utcnow()
        kwargs = {"appointment_id": event.aggregate_id, "scheduled_start": start.isoformat()}

        for task_name, lead_time in REMINDER_TASKS:
            eta = start - lead_time
            if eta <= now:
                continue
            self.enqueue(task_name, kwargs, eta)
            logger.info(
                "reminder scheduled",
                extra={
                    "appointment_id": event.aggregate_id,
                    "task": task_name,
                    "eta": eta.isoformat(),
                },
            )

        duration = data.get("duration")
        if duration is not None:
            self.enqueue(
                NO_SHOW_TASK,
                kwargs,
                start + timedelta(minutes=int(duration)) + NO_SHOW_GRACE,
            )

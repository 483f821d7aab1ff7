"""Keeps ``appointment_view`` in step with appointment events."""

from __future__ import annotations

import uuid

from sqlalchemy.orm import Session

from healz.appointment.aggregate import (
    APPOINTMENT_CANCELLED,
    APPOINTMENT_COMPLETED,
    APPOINTMENT_CONFIRMED,
    APPOINTMENT_NO_SHOW,
    APPOINTMENT_RESCHEDULED,
    APPOINTMENT_SCHEDULED,
    CANCELLED,
    COMPLETED,
    CONFIRMED,
    NO_SHOW,
    SCHEDULED,
)
from healz.core.clock import ensure_utc, parse_iso
from healz.event_sourcing.domain_event import DomainEvent
from healz.event_sourcing.projection import Projection, handles
from healz.models import AppointmentView


class AppointmentProjection(Projection):
    name = "appointment_view"
    tables = (AppointmentView,)

    @handles(APPOINTMENT_SCHEDULED)
    def on_scheduled(self, session: Session, event: DomainEvent) -> None:
        if session.get(AppointmentView, uuid.UUID(event.aggregate_id)) is not None:
            return
        data = event.event_data
        created_at = ensure_utc(event.created_at)
        session.add(
            AppointmentView(
                id=uuid.UUID(event.aggregate_id),
                patient_id=uuid.UUID(data["patient_id"]),
                tenant_id=uuid.UUID(data["tenant_id"]),
                clinic_id=uuid.UUID(data["clinic_id"]),
                doctor_id=data["doctor_id"],
                scheduled_at=parse_iso(data["scheduled_at"]),
                duration=int(data["duration"]),
                status=SCHEDULED,
                reason=data.get("reason"),
                notes=data.get("notes"),
                reschedule_count=0,
                last_event_version=event.aggregate_version,
                created_at=created_at,
                updated_at=created_at,
            )
        )
        session.flush()

    @handles(APPOINTMENT_CONFIRMED)
    def on_confirmed(self, session: Session, event: DomainEvent) -> None:
        row = self.current_row(session, AppointmentView, event)
        if row is None:
            return
        row.status = CONFIRMED
        row.confirmed_at = parse_iso(event.event_data["confirmed_at"])
        self.touch(session, row, event)

    @handles(APPOINTMENT_CANCELLED)
    def on_cancelled(self, session: Session, event: DomainEvent) -> None:
        row = self.current_row(session, AppointmentView, event)
        if row is None:
            return
        row.status = CANCELLED
        row.cancelled_at = parse_iso(event.event_data["cancelled_at"])
        self.touch(session, row, event)

    @handles(APPOINTMENT_RESCHEDULED)
    def on_rescheduled(self, session: Session, event: DomainEvent) -> None:
        row = self.current_row(session, AppointmentView, event)
        if row is None:
            return
        row.scheduled_at = parse_iso(event.event_data["new_scheduled_at"])
        row.status = SCHEDULED
        row.confirmed_at = None
        row.reschedule_count = (row.reschedule_count or 0) + 1
        self.touch(session, row, event)

    @handles(APPOINTMENT_COMPLETED)
    def on_completed(self, session: Session, event: DomainEvent) -> None:
        row = self.current_row(session, AppointmentView, event)
        if row is None:
            return
        row.status = COMPLETED
        row.completed_at = parse_iso(event.event_data["completed_at"])
        if event.event_data.get("notes"):
            row.notes = event.event_data["notes"]
        self.touch(session, row, event)

    @handles(APPOINTMENT_NO_SHOW)
    def on_no_show(self, session: Session, event: DomainEvent) -> None:
        row = self.current_row(session, AppointmentView, event)
        if row is None:
            return
        row.status = NO_SHOW
        self.touch(session, row, event)

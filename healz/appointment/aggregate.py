"""Appointment aggregate: scheduling lifecycle of a consultation."""

from __future__ import annotations

from datetime import datetime

from healz.core.clock import ensure_utc, parse_iso, utcnow
from healz.event_sourcing.aggregate import AggregateRoot, applies
from healz.event_sourcing.domain_event import DomainEvent
from healz.event_sourcing.errors import InvariantViolation

APPOINTMENT_SCHEDULED = "AppointmentScheduled"
APPOINTMENT_CONFIRMED = "AppointmentConfirmed"
APPOINTMENT_CANCELLED = "AppointmentCancelled"
APPOINTMENT_RESCHEDULED = "AppointmentRescheduled"
APPOINTMENT_COMPLETED = "AppointmentCompleted"
APPOINTMENT_NO_SHOW = "AppointmentNoShow"

SCHEDULED = "scheduled"
CONFIRMED = "confirmed"
CANCELLED = "cancelled"
COMPLETED = "completed"
NO_SHOW = "no_show"

OPEN_STATUSES = frozenset({SCHEDULED, CONFIRMED})

MIN_DURATION = 1
MAX_DURATION = 480


def _require_future(when: datetime, message: str) -> datetime:
    when = ensure_utc(when)
    if when <= utcnow():
        raise InvariantViolation(message)
    return when


class Appointment(AggregateRoot):
    aggregate_type = "Appointment"

    def __init__(self) -> None:
        super().__init__()
        self.patient_id: str | None = None
        self.doctor_id: str | None = None
        self.scheduled_at: datetime | None = None
        self.duration = 0
        self.status = SCHEDULED
        self.reason: str | None = None
        self.notes: str | None = None
        self.reschedule_count = 0

    @classmethod
    def schedule(
        cls,
        *,
        appointment_id: str,
        patient_id: str,
        tenant_id: str,
        clinic_id: str,
        doctor_id: str,
        scheduled_at: datetime,
        duration: int,
        correlation_id: str,
        reason: str | None = None,
        notes: str | None = None,
        user_id: str | None = None,
    ) -> "Appointment":
        when = _require_future(scheduled_at, "Appointment must be scheduled in the future")
        if not MIN_DURATION <= duration <= MAX_DURATION:
            raise InvariantViolation(
                f"Duration must be between {MIN_DURATION} and {MAX_DURATION} minutes"
            )
        appointment = cls()
        appointment._raise_event(
            APPOINTMENT_SCHEDULED,
            {
                "appointment_id": str(appointment_id),
                "patient_id": str(patient_id),
                "clinic_id": str(clinic_id),
                "tenant_id": str(tenant_id),
                "doctor_id": str(doctor_id),
                "scheduled_at": when.isoformat(),
                "duration": duration,
                "reason": reason,
                "notes": notes,
            },
            correlation_id=correlation_id,
            user_id=user_id,
            aggregate_id=str(appointment_id),
            tenant_id=str(tenant_id),
            clinic_id=str(clinic_id),
        )
        return appointment

    def confirm(self, *, confirmed_by: str | None, correlation_id: str) -> DomainEvent:
        if self.status != SCHEDULED:
            raise InvariantViolation("Only scheduled appointments can be confirmed")
        return self._raise_event(
            APPOINTMENT_CONFIRMED,
            {
                "appointment_id": self.id,
                "patient_id": self.patient_id,
                "confirmed_at": utcnow().isoformat(),
                "confirmed_by": confirmed_by,
            },
            correlation_id=correlation_id,
            user_id=confirmed_by,
        )

    def cancel(
        self, *, cancelled_by: str | None, correlation_id: str, reason: str | None = None
    ) -> DomainEvent:
        if self.status == COMPLETED:
            raise InvariantViolation("Cannot cancel completed appointment")
        if self.status == CANCELLED:
            raise InvariantViolation("Appointment is already cancelled")
        return self._raise_event(
            APPOINTMENT_CANCELLED,
            {
                "appointment_id": self.id,
                "patient_id": self.patient_id,
                "cancelled_at": utcnow().isoformat(),
                "cancelled_by": cancelled_by,
                "reason": reason,
            },
            correlation_id=correlation_id,
            user_id=cancelled_by,
        )

    def reschedule(
        self,
        *,
        new_scheduled_at: datetime,
        rescheduled_by: str | None,
        correlation_id: str,
        reason: str | None = None,
    ) -> DomainEvent:
        if self.status not in OPEN_STATUSES:
            raise InvariantViolation(
                "Only scheduled or confirmed appointments can be rescheduled"
            )
        when = _require_future(new_scheduled_at, "New appointment time must be in the future")
        return self._raise_event(
            APPOINTMENT_RESCHEDULED,
            {
                "appointment_id": self.id,
                "patient_id": self.patient_id,
                "previous_scheduled_at": self.scheduled_at.isoformat(),
                "new_scheduled_at": when.isoformat(),
                "duration": self.duration,
                "rescheduled_at": utcnow().isoformat(),
                "rescheduled_by": rescheduled_by,
                "reason": reason,
            },
            correlation_id=correlation_id,
            user_id=rescheduled_by,
        )

    def complete(self, *, correlation_id: str, notes: str | None = None) -> DomainEvent:
        if self.status not in OPEN_STATUSES:
            raise InvariantViolation(
                "Only scheduled or confirmed appointments can be completed"
            )
        return self._raise_event(
            APPOINTMENT_COMPLETED,
            {
                "appointment_id": self.id,
                "patient_id": self.patient_id,
                "completed_at": utcnow().isoformat(),
                "notes": notes,
            },
            correlation_id=correlation_id,
        )

    def mark_no_show(self, *, correlation_id: str) -> DomainEvent:
        if self.status not in OPEN_STATUSES:
            raise InvariantViolation(
                "Only scheduled or confirmed appointments can be marked as no-show"
            )
        return self._raise_event(
            APPOINTMENT_NO_SHOW,
            {
                "appointment_id": self.id,
                "patient_id": self.patient_id,
                "missed_at": utcnow().isoformat(),
            },
            correlation_id=correlation_id,
        )

    @applies(APPOINTMENT_SCHEDULED)
    def _on_scheduled(self, event: DomainEvent) -> None:
        data = event.event_data
        self.id = data["appointment_id"]
        self.patient_id = data["patient_id"]
        self.tenant_id = data["tenant_id"]
        self.clinic_id = data["clinic_id"]
        self.doctor_id = data["doctor_id"]
        self.scheduled_at = parse_iso(data["scheduled_at"])
        self.duration = int(data["duration"])
        self.reason = data.get("reason")
        self.notes = data.get("notes")
        self.status = SCHEDULED

    @applies(APPOINTMENT_CONFIRMED)
    def _on_confirmed(self, event: DomainEvent) -> None:
        self.status = CONFIRMED

    @applies(APPOINTMENT_CANCELLED)
    def _on_cancelled(self, event: DomainEvent) -> None:
        self.status = CANCELLED

    @applies(APPOINTMENT_RESCHEDULED)
    def _on_rescheduled(self, event: DomainEvent) -> None:
        self.scheduled_at = parse_iso(event.event_data["new_scheduled_at"])
        # A new time has to be confirmed again.
        self.status = SCHEDULED
        self.reschedule_count += 1

    @applies(APPOINTMENT_COMPLETED)
    def _on_completed(self, event: DomainEvent) -> None:
        self.status = COMPLETED
        if event.event_data.get("notes"):
            self.notes = event.event_data["notes"]

    @applies(APPOINTMENT_NO_SHOW)
    def _on_no_show(self, event: DomainEvent) -> None:
        self.status = NO_SHOW

"""Command handlers and queries for appointments."""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from healz.appointment.aggregate import CANCELLED, MAX_DURATION, Appointment
from healz.clinic_settings.scheduling import candidate_starts, check_booking_rules
from healz.clinic_settings.service import ClinicSettingsService
from healz.core.clock import clinic_timezone, ensure_utc, utcnow
from healz.event_sourcing.domain_event import propagate_or_generate
from healz.event_sourcing.errors import AggregateNotFound, InvariantViolation
from healz.event_sourcing.repository import AggregateRepository
from healz.logging_utils import correlation_scope
from healz.models import AppointmentView, Clinic, PatientView
from healz.services.tenancy import resolve_clinic

logger = logging.getLogger(__name__)


def find_conflicts(
    session: Session,
    *,
    tenant_id: str,
    doctor_id: str | None,
    start: datetime,
    duration: int,
    clinic_id: str | None = None,
    exclude_id: str | None = None,
) -> list[AppointmentView]:
    """Return the tenant's non-cancelled appointments overlapping the window.

    Narrowed to one doctor and/or one clinic when those are given.
    """

    start = ensure_utc(start)
    end = start + timedelta(minutes=duration)
    stmt = select(AppointmentView).where(
        AppointmentView.tenant_id == uuid.UUID(str(tenant_id)),
        AppointmentView.status != CANCELLED,
        AppointmentView.scheduled_at < end,
        AppointmentView.scheduled_at > start - timedelta(minutes=MAX_DURATION),
    )
    if doctor_id is not None:
        stmt = stmt.where(AppointmentView.doctor_id == str(doctor_id))
    if clinic_id is not None:
        stmt = stmt.where(AppointmentView.clinic_id == uuid.UUID(str(clinic_id)))
    if exclude_id is not None:
        stmt = stmt.where(AppointmentView.id != uuid.UUID(str(exclude_id)))

    conflicts = []
    for row in session.execute(stmt).scalars():
        row_start = ensure_utc(row.scheduled_at)
        row_end = row_start + timedelta(minutes=row.duration)
        if row_start < end and row_end > start:
            conflicts.append(row)
    return conflicts


class AppointmentService:
    def __init__(
        self,
        repository: AggregateRepository[Appointment],
        clinic_settings: ClinicSettingsService | None = None,
    ) -> None:
        self.repository = repository
        self.clinic_settings = clinic_settings or ClinicSettingsService()

    def check_clinic_rules(
        self, session: Session, clinic_id: str, start: datetime, duration: int
    ) -> None:
        """Enforce operating hours once the clinic has a scheduling section."""

        clinic = session.get(Clinic, uuid.UUID(str(clinic_id)))
        if clinic is None:
            return
        rules = self.clinic_settings.scheduling(session, clinic.id)
        if rules is None:
            return
        check_booking_rules(
            rules,
            start=start,
            duration=duration,
            tz=clinic_timezone(clinic.timezone),
            now=utcnow(),
        )

    def available_slots(
        self,
        session: Session,
        *,
        tenant_id: str,
        clinic_id: str,
        day: date,
        doctor_id: str | None = None,
        duration: int | None = None,
    ) -> list[dict[str, Any]]:
        """List the day's bookable starts in clinic local time.

        Without a doctor, a slot counts as taken when any appointment of
        the clinic overlaps it.
        """

        clinic = resolve_clinic(session, tenant_id, clinic_id)
        rules = self.clinic_settings.scheduling(session, clinic.id)
        if rules is None:
            return []
        tz = clinic_timezone(clinic.timezone)
        length = duration or rules.default_appointment_duration
        now = utcnow()

        slots = []
        for start in candidate_starts(rules, day, tz, length):
            try:
                check_booking_rules(rules, start=start, duration=length, tz=tz, now=now)
                available = not find_conflicts(
                    session,
                    tenant_id=tenant_id,
                    doctor_id=doctor_id,
                    clinic_id=None if doctor_id else str(clinic.id),
                    start=start,
                    duration=length,
                )
            except InvariantViolation:
                available = False
            slots.append(
                {
                    "time": start.astimezone(tz).strftime("%H:%M"),
                    "start": start.isoformat(),
                    "available": available,
                }
            )
        return slots

    def schedule(
        self,
        session: Session,
        *,
        tenant_id: str,
        clinic_id: str,
        patient_id: str,
        doctor_id: str,
        scheduled_at: datetime,
        duration: int,
        reason: str | None = None,
        notes: str | None = None,
        user_id: str | None = None,
        correlation_id: str | None = None,
    ) -> Appointment:
        patient = session.get(PatientView, uuid.UUID(str(patient_id)))
        if patient is None or patient.tenant_id != uuid.UUID(str(tenant_id)):
            raise AggregateNotFound("Patient", str(patient_id))

        self.check_clinic_rules(session, clinic_id, scheduled_at, duration)

        if find_conflicts(
            session,
            tenant_id=tenant_id,
            doctor_id=doctor_id,
            start=scheduled_at,
            duration=duration,
        ):
            raise InvariantViolation("Time slot not available")

        correlation = propagate_or_generate(correlation_id, "schedule-appointment")
        with correlation_scope(correlation):
            appointment = Appointment.schedule(
                appointment_id=str(uuid.uuid4()),
                patient_id=str(patient_id),
                tenant_id=tenant_id,
                clinic_id=clinic_id,
                doctor_id=doctor_id,
                scheduled_at=scheduled_at,
                duration=duration,
                reason=reason,
                notes=notes,
                correlation_id=correlation,
                user_id=user_id,
            )
            self.repository.save(session, appointment)
            logger.info(
                "appointment scheduled",
                extra={
                    "appointment_id": appointment.id,
                    "doctor_id": doctor_id,
                    "scheduled_at": appointment.scheduled_at.isoformat(),
                },
            )
        return appointment

    def confirm(
        self,
        session: Session,
        appointment_id: str,
        *,
        tenant_id: str,
        confirmed_by: str | None = None,
        correlation_id: str | None = None,
    ) -> Appointment:
        correlation = propagate_or_generate(correlation_id, "confirm-appointment")
        with correlation_scope(correlation):
            appointment = self.load(session, appointment_id, tenant_id)
            appointment.confirm(confirmed_by=confirmed_by, correlation_id=correlation)
            self.repository.save(session, appointment)
        return appointment

    def cancel(
        self,
        session: Session,
        appointment_id: str,
        *,
        tenant_id: str,
        cancelled_by: str | None = None,
        reason: str | None = None,
        correlation_id: str | None = None,
    ) -> Appointment:
        correlation = propagate_or_generate(correlation_id, "cancel-appointment")
        with correlation_scope(correlation):
            appointment = self.load(session, appointment_id, tenant_id)
            appointment.cancel(
                cancelled_by=cancelled_by, reason=reason, correlation_id=correlation
            )
            self.repository.save(session, appointment)
        return appointment

    def reschedule(
        self,
        session: Session,
        appointment_id: str,
        *,
        tenant_id: str,
        new_scheduled_at: datetime,
        rescheduled_by: str | None = None,
        reason: str | None = None,
        correlation_id: str | None = None,
    ) -> Appointment:
        correlation = propagate_or_generate(correlation_id, "reschedule-appointment")
        with correlation_scope(correlation):
            appointment = self.load(session, appointment_id, tenant_id)
            self.check_clinic_rules(
                session, appointment.clinic_id, new_scheduled_at, appointment.duration
            )
            if find_conflicts(
                session,
                tenant_id=tenant_id,
                doctor_id=appointment.doctor_id,
                start=new_scheduled_at,
                duration=appointment.duration,
                exclude_id=appointment.id,
            ):
                raise InvariantViolation("New time slot not available")
            appointment.reschedule(
                new_scheduled_at=new_scheduled_at,
                rescheduled_by=rescheduled_by,
                reason=reason,
                correlation_id=correlation,
            )
            self.repository.save(session, appointment)
        return appointment

    def complete(
        self,
        session: Session,
        appointment_id: str,
        *,
        tenant_id: str,
        notes: str | None = None,
        correlation_id: str | None = None,
    ) -> Appointment:
        correlation = propagate_or_generate(correlation_id, "complete-appointment")
        with correlation_scope(correlation):
            appointment = self.load(session, appointment_id, tenant_id)
            appointment.complete(notes=notes, correlation_id=correlation)
            self.repository.save(session, appointment)
        return appointment

    def mark_no_show(
        self,
        session: Session,
        appointment_id: str,
        *,
        tenant_id: str,
        correlation_id: str | None = None,
    ) -> Appointment:
        correlation = propagate_or_generate(correlation_id, "no-show-appointment")
        with correlation_scope(correlation):
            appointment = self.load(session, appointment_id, tenant_id)
            appointment.mark_no_show(correlation_id=correlation)
            self.repository.save(session, appointment)
        return appointment

    def load(self, session: Session, appointment_id: str, tenant_id: str) -> Appointment:
        appointment = self.repository.load(session, str(appointment_id))
        if appointment.tenant_id != str(tenant_id):
            raise AggregateNotFound(Appointment.aggregate_type, str(appointment_id))
        return appointment

    @staticmethod
    def list_appointments(
        session: Session, tenant_id: str, clinic_id: str | None = None
    ) -> list[AppointmentView]:
        stmt = select(AppointmentView).where(
            AppointmentView.tenant_id == uuid.UUID(str(tenant_id))
        )
        if clinic_id is not None:
            stmt = stmt.where(AppointmentView.clinic_id == uuid.UUID(str(clinic_id)))
        stmt = stmt.order_by(AppointmentView.scheduled_at)
        return list(session.execute(stmt).scalars().all())


def serialize_appointment(row: AppointmentView, tz: Any = None) -> dict[str, Any]:
    scheduled_at = ensure_utc(row.scheduled_at)
    payload = {
        "id": str(row.id),
        "patient_id": str(row.patient_id),
        "clinic_id": str(row.clinic_id),
        "doctor_id": row.doctor_id,
        "scheduled_at": scheduled_at.isoformat(),
        "duration": row.duration,
        "status": row.status,
        "reason": row.reason,
        "notes": row.notes,
        "reschedule_count": row.reschedule_count,
        "version": row.last_event_version,
    }
    if tz is not None:
        payload["scheduled_at_local"] = scheduled_at.astimezone(tz).isoformat()
    return payload

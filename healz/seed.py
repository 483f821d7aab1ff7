from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, time, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from healz.clinic_settings.schemas import WEEKDAYS, SchedulingSettings
from healz.core.clock import clinic_timezone, ensure_utc
from healz.core.config import settings
from healz.db.session import session_scope
from healz.logging_utils import configure_logging
from healz.models import AppointmentView, Clinic, ClinicMember, MemberRole, Organization
from healz.patient.service import PatientService
from healz.services.tenancy import (
    add_member,
    apply_tenant_scope,
    create_clinic,
    create_organization,
)
from healz.wiring import Container, get_container

logger = logging.getLogger(__name__)

ORGANIZATION = ("Healz Demo", "healz-demo")
CLINIC = ("Clínica Healz Centro", "centro")

MEMBERS: list[tuple[str, MemberRole]] = [
    ("dra.ana", MemberRole.DOCTOR),
    ("dr.bruno", MemberRole.DOCTOR),
    ("recepcao", MemberRole.RECEPTIONIST),
]

PATIENTS: list[tuple[str, str, str]] = [
    ("Maria Silva", "maria.silva@example.com", "+5585987654321"),
    ("João Pereira", "joao.pereira@example.com", "+558593334455"),
]

OPENING_HOURS: dict[str, list[dict[str, str]]] = {
    **{
        day: [{"from": "08:00", "to": "12:00"}, {"from": "14:00", "to": "18:00"}]
        for day in ("monday", "tuesday", "wednesday", "thursday", "friday")
    },
    "saturday": [{"from": "08:00", "to": "12:00"}],
}

SERVICES: list[dict[str, Any]] = [
    {"id": "consulta", "title": "Consulta de rotina", "duration": 45, "value": "R$ 200,00"},
    {"id": "retorno", "title": "Retorno", "duration": 30, "value": "Sem custo"},
]


def ensure_organization(session: Session) -> Organization:
    name, slug = ORGANIZATION
    organization = session.execute(
        select(Organization).where(Organization.slug == slug)
    ).scalar_one_or_none()
    if organization:
        logger.info("organization already present", extra={"organization_id": str(organization.id)})
    else:
        organization = create_organization(session, name=name, slug=slug)
    apply_tenant_scope(session, organization.id)
    return organization


def ensure_clinic(session: Session, organization: Organization) -> Clinic:
    name, slug = CLINIC
    clinic = session.execute(
        select(Clinic).where(Clinic.organization_id == organization.id, Clinic.slug == slug)
    ).scalar_one_or_none()
    if clinic:
        return clinic
    return create_clinic(
        session,
        organization_id=organization.id,
        name=name,
        slug=slug,
        timezone=settings.timezone,
    )


def ensure_members(session: Session, clinic: Clinic) -> list[str]:
    created = 0
    for user_id, role in MEMBERS:
        existing = session.execute(
            select(ClinicMember.id).where(
                ClinicMember.clinic_id == clinic.id, ClinicMember.user_id == user_id
            )
        ).first()
        if existing is None:
            add_member(session, clinic_id=clinic.id, user_id=user_id, role=role)
            created += 1

    logger.info("ensured members", extra={"clinic_id": str(clinic.id), "created": created})
    return [user_id for user_id, role in MEMBERS if role == MemberRole.DOCTOR]


def ensure_patients(session: Session, container: Container, clinic: Clinic) -> list[str]:
    tenant_id = str(clinic.organization_id)
    patient_ids: list[str] = []
    created = 0
    for name, email, phone in PATIENTS:
        existing = PatientService.find_by_phone(session, tenant_id, phone)
        if existing is not None:
            patient_ids.append(str(existing.id))
            continue
        patient = container.patients.register(
            session,
            tenant_id=tenant_id,
            clinic_id=str(clinic.id),
            phone=phone,
            full_name=name,
            email=email,
            user_id="seed",
        )
        patient_ids.append(patient.id)
        created += 1

    logger.info(
        "ensured patients",
        extra={"clinic_id": str(clinic.id), "created": created, "total": len(patient_ids)},
    )
    return patient_ids


def ensure_settings(session: Session, container: Container, clinic: Clinic) -> None:
    """Give the demo clinic opening hours, services and a published Carol."""

    service = container.clinic_settings
    scope = {"tenant_id": clinic.organization_id, "clinic_id": clinic.id}
    if service.scheduling(session, clinic.id) is None:
        service.save_section(
            session,
            section="scheduling",
            data={
                "weekly_schedule": [
                    {
                        "day": day,
                        "is_open": day in OPENING_HOURS,
                        "time_slots": OPENING_HOURS.get(day, []),
                    }
                    for day in WEEKDAYS
                ],
                "default_appointment_duration": 30,
                "minimum_advance_hours": 2,
                "max_future_days": 90,
            },
            **scope,
        )
    if service.get_section(session, clinic.id, "services") is None:
        service.save_section(session, section="services", data={"services": SERVICES}, **scope)
    if service.carol_config(session, clinic.id, "published") is None:
        service.save_carol_draft(session, data={"voice_tone": "empathetic"}, **scope)
        service.publish_carol(session, **scope)


def _is_open(rules: SchedulingSettings, day: date) -> bool:
    entry = rules.day(day.weekday())
    return entry is not None and entry.is_open


def ensure_appointments(
    session: Session,
    container: Container,
    clinic: Clinic,
    patient_ids: list[str],
    doctor_ids: list[str],
) -> int:
    """Book each patient without an appointment into the next open morning."""

    tz = clinic_timezone(clinic.timezone)
    rules = container.clinic_settings.scheduling(session, clinic.id)
    day = datetime.now(tz).date() + timedelta(days=1)
    while rules is not None and not _is_open(rules, day):
        day += timedelta(days=1)
    created = 0
    for index, patient_id in enumerate(patient_ids):
        booked = session.execute(
            select(AppointmentView.id).where(AppointmentView.patient_id == uuid.UUID(patient_id))
        ).first()
        if booked is not None:
            continue
        local_start = datetime.combine(day, time(hour=9 + index), tzinfo=tz)
        container.appointments.schedule(
            session,
            tenant_id=str(clinic.organization_id),
            clinic_id=str(clinic.id),
            patient_id=patient_id,
            doctor_id=doctor_ids[index % len(doctor_ids)],
            scheduled_at=ensure_utc(local_start),
            duration=45,
            reason="Consulta de rotina",
            user_id="seed",
        )
        created += 1

    logger.info("ensured appointments", extra={"clinic_id": str(clinic.id), "created": created})
    return created


def seed_demo(session: Session, container: Container) -> dict[str, Any]:
    organization = ensure_organization(session)
    clinic = ensure_clinic(session, organization)
    doctor_ids = ensure_members(session, clinic)
    patient_ids = ensure_patients(session, container, clinic)
    ensure_settings(session, container, clinic)
    ensure_appointments(session, container, clinic, patient_ids, doctor_ids)
    return {
        "organization_id": str(organization.id),
        "clinic_id": str(clinic.id),
        "patient_ids": patient_ids,
    }


def seed() -> None:
    configure_logging()
    logger.info("starting seed process")

    try:
        with session_scope() as session:
            result = seed_demo(session, get_container())
    except Exception:
        logger.exception("seed failed")
        raise
    logger.info("seed complete", extra=result)


if __name__ == "__main__":  # pragma: no cover - script entrypoint
    seed()

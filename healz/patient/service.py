"""Command handlers and queries for patients."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from healz.event_sourcing.domain_event import propagate_or_generate
from healz.event_sourcing.errors import AggregateNotFound, InvariantViolation
from healz.event_sourcing.repository import AggregateRepository
from healz.logging_utils import correlation_scope
from healz.models import PatientView
from healz.patient.aggregate import Patient, normalize_phone

logger = logging.getLogger(__name__)


class PatientService:
    def __init__(self, repository: AggregateRepository[Patient]) -> None:
        self.repository = repository

    def register(
        self,
        session: Session,
        *,
        tenant_id: str,
        clinic_id: str,
        phone: str,
        full_name: str | None = None,
        email: str | None = None,
        birth_date: str | None = None,
        user_id: str | None = None,
        correlation_id: str | None = None,
    ) -> Patient:
        """Register a patient, rejecting a phone already known to the tenant."""

        normalized = normalize_phone(phone)
        if self.find_by_phone(session, tenant_id, normalized) is not None:
            raise InvariantViolation("A patient with this phone is already registered")

        correlation = propagate_or_generate(correlation_id, "register-patient")
        with correlation_scope(correlation):
            patient = Patient.register(
                patient_id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                clinic_id=clinic_id,
                phone=normalized,
                full_name=full_name,
                email=email,
                birth_date=birth_date,
                correlation_id=correlation,
                user_id=user_id,
            )
            self.repository.save(session, patient)
            logger.info(
                "patient registered",
                extra={"patient_id": patient.id, "clinic_id": clinic_id},
            )
        return patient

    def update(
        self,
        session: Session,
        patient_id: str,
        *,
        tenant_id: str,
        user_id: str | None = None,
        correlation_id: str | None = None,
        **changes: Any,
    ) -> Patient:
        correlation = propagate_or_generate(correlation_id, "update-patient")
        with correlation_scope(correlation):
            patient = self.load(session, patient_id, tenant_id)
            patient.update(correlation_id=correlation, user_id=user_id, **changes)
            self.repository.save(session, patient)
        return patient

    def deactivate(
        self,
        session: Session,
        patient_id: str,
        *,
        tenant_id: str,
        reason: str | None = None,
        user_id: str | None = None,
        correlation_id: str | None = None,
    ) -> Patient:
        correlation = propagate_or_generate(correlation_id, "deactivate-patient")
        with correlation_scope(correlation):
            patient = self.load(session, patient_id, tenant_id)
            patient.deactivate(correlation_id=correlation, reason=reason, user_id=user_id)
            self.repository.save(session, patient)
        return patient

    def suspend(
        self,
        session: Session,
        patient_id: str,
        *,
        tenant_id: str,
        reason: str | None = None,
        user_id: str | None = None,
        correlation_id: str | None = None,
    ) -> Patient:
        correlation = propagate_or_generate(correlation_id, "suspend-patient")
        with correlation_scope(correlation):
            patient = self.load(session, patient_id, tenant_id)
            patient.suspend(correlation_id=correlation, reason=reason, user_id=user_id)
            self.repository.save(session, patient)
        return patient

    def reactivate(
        self,
        session: Session,
        patient_id: str,
        *,
        tenant_id: str,
        user_id: str | None = None,
        correlation_id: str | None = None,
    ) -> Patient:
        correlation = propagate_or_generate(correlation_id, "reactivate-patient")
        with correlation_scope(correlation):
            patient = self.load(session, patient_id, tenant_id)
            patient.reactivate(correlation_id=correlation, user_id=user_id)
            self.repository.save(session, patient)
        return patient

    def load(self, session: Session, patient_id: str, tenant_id: str) -> Patient:
        """Load a patient, hiding patients owned by other tenants."""

        patient = self.repository.load(session, str(patient_id))
        if patient.tenant_id != str(tenant_id):
            raise AggregateNotFound(Patient.aggregate_type, str(patient_id))
        return patient

    @staticmethod
    def find_by_phone(session: Session, tenant_id: str, phone: str) -> PatientView | None:
        stmt = select(PatientView).where(
            PatientView.tenant_id == uuid.UUID(str(tenant_id)),
            PatientView.phone == normalize_phone(phone),
        )
        return session.execute(stmt).scalars().first()

    @staticmethod
    def list_patients(
        session: Session, tenant_id: str, clinic_id: str | None = None
    ) -> list[PatientView]:
        stmt = select(PatientView).where(PatientView.tenant_id == uuid.UUID(str(tenant_id)))
        if clinic_id is not None:
            stmt = stmt.where(PatientView.clinic_id == uuid.UUID(str(clinic_id)))
        stmt = stmt.order_by(PatientView.created_at)
        return list(session.execute(stmt).scalars().all())


def serialize_patient(row: PatientView) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "tenant_id": str(row.tenant_id),
        "clinic_id": str(row.clinic_id),
        "phone": row.phone,
        "full_name": row.full_name,
        "email": row.email,
        "birth_date": row.birth_date.isoformat() if row.birth_date else None,
        "status": row.status,
        "version": row.last_event_version,
    }

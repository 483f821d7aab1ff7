"""Keeps ``patient_view`` in step with patient events."""

from __future__ import annotations

import uuid
from datetime import date

from sqlalchemy.orm import Session

from healz.core.clock import ensure_utc
from healz.event_sourcing.domain_event import DomainEvent
from healz.event_sourcing.projection import Projection, handles
from healz.models import PatientView
from healz.patient.aggregate import (
    ACTIVE,
    INACTIVE,
    PATIENT_DEACTIVATED,
    PATIENT_REACTIVATED,
    PATIENT_REGISTERED,
    PATIENT_SUSPENDED,
    PATIENT_UPDATED,
    SUSPENDED,
)


def _parse_birth_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


class PatientProjection(Projection):
    name = "patient_view"
    tables = (PatientView,)

    @handles(PATIENT_REGISTERED)
    def on_registered(self, session: Session, event: DomainEvent) -> None:
        data = event.event_data
        if session.get(PatientView, uuid.UUID(event.aggregate_id)) is not None:
            return
        created_at = ensure_utc(event.created_at)
        session.add(
            PatientView(
                id=uuid.UUID(event.aggregate_id),
                tenant_id=uuid.UUID(data["tenant_id"]),
                clinic_id=uuid.UUID(data["clinic_id"]),
                phone=data["phone"],
                full_name=data.get("full_name"),
                email=data.get("email"),
                birth_date=_parse_birth_date(data.get("birth_date")),
                status=ACTIVE,
                metadata_json={},
                last_event_version=event.aggregate_version,
                created_at=created_at,
                updated_at=created_at,
            )
        )
        session.flush()

    @handles(PATIENT_UPDATED)
    def on_updated(self, session: Session, event: DomainEvent) -> None:
        row = self.current_row(session, PatientView, event)
        if row is None:
            return
        updates = event.event_data.get("updates", {})
        if "full_name" in updates:
            row.full_name = updates["full_name"]
        if "email" in updates:
            row.email = updates["email"]
        if "birth_date" in updates:
            row.birth_date = _parse_birth_date(updates["birth_date"])
        self.touch(session, row, event)

    @handles(PATIENT_DEACTIVATED)
    def on_deactivated(self, session: Session, event: DomainEvent) -> None:
        self._set_status(session, event, INACTIVE)

    @handles(PATIENT_SUSPENDED)
    def on_suspended(self, session: Session, event: DomainEvent) -> None:
        self._set_status(session, event, SUSPENDED)

    @handles(PATIENT_REACTIVATED)
    def on_reactivated(self, session: Session, event: DomainEvent) -> None:
        self._set_status(session, event, ACTIVE)

    def _set_status(self, session: Session, event: DomainEvent, status: str) -> None:
        row = self.current_row(session, PatientView, event)
        if row is None:
            return
        row.status = status
        self.touch(session, row, event)

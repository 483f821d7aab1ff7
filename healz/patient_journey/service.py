"""Read access to patient journeys."""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from healz.event_sourcing.errors import AggregateNotFound
from healz.event_sourcing.repository import AggregateRepository
from healz.models import PatientJourneyView
from healz.patient_journey.aggregate import PatientJourney


class PatientJourneyService:
    def __init__(self, repository: AggregateRepository[PatientJourney]) -> None:
        self.repository = repository

    def get_journey(
        self, session: Session, patient_id: str, tenant_id: str | None = None
    ) -> PatientJourney:
        """Return the patient's latest journey rebuilt from its event stream."""

        stmt = select(PatientJourneyView.id).where(
            PatientJourneyView.patient_id == uuid.UUID(str(patient_id))
        )
        if tenant_id is not None:
            stmt = stmt.where(PatientJourneyView.tenant_id == uuid.UUID(str(tenant_id)))
        stmt = stmt.order_by(PatientJourneyView.created_at.desc()).limit(1)
        journey_id = session.execute(stmt).scalar_one_or_none()
        if journey_id is None:
            raise AggregateNotFound(PatientJourney.aggregate_type, str(patient_id))
        return self.repository.load(session, str(journey_id))


def serialize_journey(journey: PatientJourney) -> dict[str, Any]:
    return {
        "journey_id": journey.id,
        "patient_id": journey.patient_id,
        "clinic_id": journey.clinic_id,
        "current_stage": journey.current_stage.value,
        "risk_score": journey.risk_score,
        "risk_level": journey.risk_level,
        "milestones": list(journey.milestones),
        "stage_history": list(journey.stage_history),
        "version": journey.version,
    }

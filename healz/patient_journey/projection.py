"""Keeps ``patient_journey_view`` in step with journey events."""

from __future__ import annotations

import uuid

from sqlalchemy.orm import Session

from healz.core.clock import ensure_utc
from healz.event_sourcing.domain_event import DomainEvent
from healz.event_sourcing.projection import Projection, handles
from healz.models import PatientJourneyView
from healz.patient_journey.aggregate import (
    JOURNEY_MILESTONE_REACHED,
    JOURNEY_STAGE_CHANGED,
    JOURNEY_STARTED,
    RISK_DETECTED,
    RISK_SCORE_RECALCULATED,
)
from healz.patient_journey.risk import risk_level


class PatientJourneyProjection(Projection):
    name = "patient_journey_view"
    tables = (PatientJourneyView,)

    @handles(JOURNEY_STARTED)
    def on_started(self, session: Session, event: DomainEvent) -> None:
        if session.get(PatientJourneyView, uuid.UUID(event.aggregate_id)) is not None:
            return
        data = event.event_data
        created_at = ensure_utc(event.created_at)
        session.add(
            PatientJourneyView(
                id=uuid.UUID(event.aggregate_id),
                patient_id=uuid.UUID(data["patient_id"]),
                tenant_id=uuid.UUID(data["tenant_id"]),
                clinic_id=uuid.UUID(data["clinic_id"]) if data.get("clinic_id") else None,
                current_stage=data["initial_stage"],
                risk_score=0,
                risk_level="low",
                milestones=[],
                stage_history=[
                    {"stage": data["initial_stage"], "timestamp": created_at.isoformat()}
                ],
                last_event_version=event.aggregate_version,
                created_at=created_at,
                updated_at=created_at,
            )
        )
        session.flush()

    @handles(JOURNEY_STAGE_CHANGED)
    def on_stage_changed(self, session: Session, event: DomainEvent) -> None:
        row = self.current_row(session, PatientJourneyView, event)
        if row is None:
            return
        new_stage = event.event_data["new_stage"]
        row.current_stage = new_stage
        row.stage_history = [
            *(row.stage_history or []),
            {
                "stage": new_stage,
                "timestamp": ensure_utc(event.created_at).isoformat(),
                "reason": event.event_data.get("reason"),
            },
        ]
        self.touch(session, row, event)

    @handles(RISK_DETECTED)
    def on_risk_detected(self, session: Session, event: DomainEvent) -> None:
        row = self.current_row(session, PatientJourneyView, event)
        if row is None:
            return
        row.risk_score = int(event.event_data["risk_score"])
        row.risk_level = event.event_data["risk_level"]
        self.touch(session, row, event)

    @handles(RISK_SCORE_RECALCULATED)
    def on_risk_recalculated(self, session: Session, event: DomainEvent) -> None:
        row = self.current_row(session, PatientJourneyView, event)
        if row is None:
            return
        row.risk_score = int(event.event_data["new_score"])
        row.risk_level = risk_level(row.risk_score)
        self.touch(session, row, event)

    @handles(JOURNEY_MILESTONE_REACHED)
    def on_milestone_reached(self, session: Session, event: DomainEvent) -> None:
        row = self.current_row(session, PatientJourneyView, event)
        if row is None:
            return
        milestone = event.event_data["milestone"]
        if milestone not in (row.milestones or []):
            row.milestones = [*(row.milestones or []), milestone]
        self.touch(session, row, event)

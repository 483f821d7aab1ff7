"""Drives patient journeys from patient, conversation and appointment events."""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from healz.appointment.aggregate import (
    APPOINTMENT_CANCELLED,
    APPOINTMENT_COMPLETED,
    APPOINTMENT_CONFIRMED,
    APPOINTMENT_NO_SHOW,
    APPOINTMENT_SCHEDULED,
    CANCELLED,
    Appointment,
)
from healz.conversation.aggregate import MESSAGE_RECEIVED
from healz.event_sourcing.domain_event import DomainEvent
from healz.event_sourcing.event_bus import EventBus
from healz.event_sourcing.event_store import SqlAlchemyEventStore
from healz.event_sourcing.repository import AggregateRepository
from healz.logging_utils import correlation_scope
from healz.models import AppointmentView
from healz.patient.aggregate import PATIENT_REGISTERED, Patient
from healz.patient_journey.aggregate import JOURNEY_STARTED, PatientJourney
from healz.patient_journey.risk import FREQUENT_CANCELLATIONS, NO_SHOW
from healz.patient_journey.stages import JourneyStage

logger = logging.getLogger(__name__)

FREQUENT_CANCELLATION_THRESHOLD = 2


class JourneyNotStarted(RuntimeError):
    """The patient is registered but its journey does not exist yet."""

    def __init__(self, patient_id: str) -> None:
        super().__init__(f"No journey started yet for patient {patient_id}")
        self.patient_id = patient_id


class PatientJourneyProcessManager:
    """Saga reacting to other aggregates' events by commanding journeys.

    Every event it raises carries the triggering event's correlation id and
    uses that event's id as causation id. An event the journey stream
    already answered is skipped, so redelivery is harmless.
    """

    def __init__(
        self,
        repository: AggregateRepository[PatientJourney],
        store: SqlAlchemyEventStore,
    ) -> None:
        self.repository = repository
        self.store = store

    def register(self, bus: EventBus) -> None:
        bus.subscribe_all(
            {
                PATIENT_REGISTERED: self.on_patient_registered,
                MESSAGE_RECEIVED: self.on_message_received,
                APPOINTMENT_SCHEDULED: self.on_appointment_scheduled,
                APPOINTMENT_CONFIRMED: self.on_appointment_confirmed,
                APPOINTMENT_CANCELLED: self.on_appointment_cancelled,
                APPOINTMENT_NO_SHOW: self.on_appointment_no_show,
                APPOINTMENT_COMPLETED: self.on_appointment_completed,
            }
        )

    def on_patient_registered(self, session: Session, event: DomainEvent) -> None:
        patient_id = event.aggregate_id
        if self._started_by(session, event) is not None:
            logger.info(
                "registration already started a journey",
                extra={"patient_id": patient_id, "event_id": event.event_id},
            )
            return
        with correlation_scope(event.correlation_id):
            journey = PatientJourney.start(
                journey_id=str(uuid.uuid4()),
                patient_id=patient_id,
                tenant_id=event.tenant_id,
                clinic_id=event.clinic_id,
                correlation_id=event.correlation_id,
                causation_id=event.event_id,
            )
            self.repository.save(session, journey)
            logger.info(
                "journey started",
                extra={"journey_id": journey.id, "patient_id": patient_id},
            )

    def on_message_received(self, session: Session, event: DomainEvent) -> None:
        journey = self._journey_for(session, event)
        if journey is None:
            return
        with correlation_scope(event.correlation_id):
            if journey.current_stage == JourneyStage.LEAD:
                self._transition(journey, JourneyStage.ENGAGED, "Patient sent first message", event)
            self._milestone(journey, "first_message", event)
            self.repository.save(session, journey)

    def on_appointment_scheduled(self, session: Session, event: DomainEvent) -> None:
        journey = self._journey_for(session, event)
        if journey is None:
            return
        with correlation_scope(event.correlation_id):
            if journey.current_stage in (JourneyStage.ENGAGED, JourneyStage.AT_RISK):
                self._transition(journey, JourneyStage.SCHEDULED, "Appointment scheduled", event)
            self._milestone(journey, "first_appointment", event)
            self.repository.save(session, journey)

    def on_appointment_confirmed(self, session: Session, event: DomainEvent) -> None:
        journey = self._journey_for(session, event)
        if journey is None:
            return
        with correlation_scope(event.correlation_id):
            if journey.current_stage == JourneyStage.SCHEDULED:
                self._transition(journey, JourneyStage.CONFIRMED, "Appointment confirmed", event)
            self.repository.save(session, journey)

    def on_appointment_cancelled(self, session: Session, event: DomainEvent) -> None:
        journey = self._journey_for(session, event)
        if journey is None:
            return
        with correlation_scope(event.correlation_id):
            cancellations = self._cancellation_count(session, journey.patient_id)
            if cancellations >= FREQUENT_CANCELLATION_THRESHOLD:
                journey.detect_risk(
                    [FREQUENT_CANCELLATIONS],
                    correlation_id=event.correlation_id,
                    causation_id=event.event_id,
                )
            elif journey.can_transition_to(JourneyStage.ENGAGED):
                self._transition(journey, JourneyStage.ENGAGED, "Appointment cancelled", event)
            self.repository.save(session, journey)

    def on_appointment_no_show(self, session: Session, event: DomainEvent) -> None:
        journey = self._journey_for(session, event)
        if journey is None:
            return
        with correlation_scope(event.correlation_id):
            journey.detect_risk(
                [NO_SHOW], correlation_id=event.correlation_id, causation_id=event.event_id
            )
            self.repository.save(session, journey)

    def on_appointment_completed(self, session: Session, event: DomainEvent) -> None:
        journey = self._journey_for(session, event)
        if journey is None:
            return
        with correlation_scope(event.correlation_id):
            if journey.can_transition_to(JourneyStage.IN_TREATMENT):
                self._transition(
                    journey, JourneyStage.IN_TREATMENT, "Appointment completed", event
                )
            self._milestone(journey, "first_consultation_completed", event)
            self.repository.save(session, journey)

    def _journey_for(self, session: Session, event: DomainEvent) -> PatientJourney | None:
        patient_id = self._patient_id(session, event)
        if patient_id is None:
            logger.debug(
                "event without patient reference", extra={"event_id": event.event_id}
            )
            return None
        journey_id = self._journey_id(session, patient_id, event.tenant_id)
        if journey_id is None:
            return None
        if self.store.has_caused(
            session, PatientJourney.aggregate_type, journey_id, event.event_id
        ):
            logger.info(
                "event already handled by journey",
                extra={"journey_id": journey_id, "event_id": event.event_id},
            )
            return None
        journey = self.repository.load(session, journey_id)
        if journey.current_stage == JourneyStage.COMPLETED:
            return None
        return journey

    def _journey_id(self, session: Session, patient_id: str, tenant_id: str) -> str | None:
        """Find the journey started by the patient's registration.

        Raises ``JourneyNotStarted`` when the patient is registered but the
        registration has not been handled yet, so a queued dispatch retries.
        """

        registered = self.store.first_event(session, Patient.aggregate_type, patient_id)
        if registered is None or registered.tenant_id != str(tenant_id):
            logger.debug("no registered patient", extra={"patient_id": patient_id})
            return None
        started = self._started_by(session, registered)
        if started is None:
            raise JourneyNotStarted(patient_id)
        return started.aggregate_id

    def _started_by(self, session: Session, registered: DomainEvent) -> DomainEvent | None:
        started = self.store.get_caused_by(
            session, registered.event_id, event_type=JOURNEY_STARTED
        )
        return started[0] if started else None

    def _patient_id(self, session: Session, event: DomainEvent) -> str | None:
        patient_id = event.event_data.get("patient_id")
        if patient_id:
            return str(patient_id)
        if event.aggregate_type == Appointment.aggregate_type:
            scheduled = self.store.first_event(session, event.aggregate_type, event.aggregate_id)
            if scheduled is not None and scheduled.event_data.get("patient_id"):
                return str(scheduled.event_data["patient_id"])
        return None

    @staticmethod
    def _cancellation_count(session: Session, patient_id: str) -> int:
        stmt = select(func.count()).select_from(AppointmentView).where(
            AppointmentView.patient_id == uuid.UUID(str(patient_id)),
            AppointmentView.status == CANCELLED,
        )
        return int(session.execute(stmt).scalar_one())

    @staticmethod
    def _transition(
        journey: PatientJourney, stage: JourneyStage, reason: str, event: DomainEvent
    ) -> None:
        journey.transition_to(
            stage,
            reason=reason,
            triggered_by=event.event_id,
            correlation_id=event.correlation_id,
            causation_id=event.event_id,
        )

    @staticmethod
    def _milestone(journey: PatientJourney, milestone: str, event: DomainEvent) -> None:
        journey.reach_milestone(
            milestone, correlation_id=event.correlation_id, causation_id=event.event_id
        )

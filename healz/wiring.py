"""Assembles the event store, bus, projections and command handlers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache
from typing import Any

from healz.appointment.aggregate import Appointment
from healz.appointment.projection import AppointmentProjection
from healz.appointment.reminders import Enqueue, ReminderScheduler
from healz.appointment.service import AppointmentService
from healz.carol.chat import CarolChatService
from healz.carol.openai_model import OpenAIChatModel
from healz.carol.ports import ChatModel
from healz.clinic_settings.service import ClinicSettingsService
from healz.conversation.aggregate import Conversation
from healz.conversation.ports import IntentDetector, MessagingGateway
from healz.conversation.projection import ConversationProjection
from healz.conversation.service import (
    ConversationService,
    ReceiveMessageHandler,
    SendMessageHandler,
)
from healz.core.config import settings
from healz.event_sourcing.event_bus import (
    CeleryEventPublisher,
    EventBus,
    EventPublisher,
    LocalEventPublisher,
)
from healz.event_sourcing.event_store import SqlAlchemyEventStore
from healz.event_sourcing.projection import Projection, ProjectionRebuilder
from healz.event_sourcing.repository import AggregateRepository
from healz.patient.aggregate import Patient
from healz.patient.projection import PatientProjection
from healz.patient.service import PatientService
from healz.patient_journey.aggregate import PatientJourney
from healz.patient_journey.process_manager import PatientJourneyProcessManager
from healz.patient_journey.projection import PatientJourneyProjection
from healz.patient_journey.service import PatientJourneyService
from healz.services.whatsapp_client import EvolutionMessagingGateway

logger = logging.getLogger(__name__)

DISPATCH_TASK = "jobs.dispatch_event"


def _send_to_worker(payload: dict[str, Any]) -> None:
    from jobs.celery_app import celery_app

    celery_app.send_task(DISPATCH_TASK, args=[payload])


def _enqueue_task(task_name: str, kwargs: dict[str, Any], eta: datetime) -> None:
    from jobs.celery_app import celery_app

    celery_app.send_task(task_name, kwargs=kwargs, eta=eta)


@dataclass
class Container:
    store: SqlAlchemyEventStore
    bus: EventBus
    publisher: EventPublisher
    patients: PatientService
    appointments: AppointmentService
    conversations: ConversationService
    receive_message: ReceiveMessageHandler
    send_message: SendMessageHandler
    journeys: PatientJourneyService
    clinic_settings: ClinicSettingsService
    carol_chat: CarolChatService
    rebuilder: ProjectionRebuilder
    projections: dict[str, Projection] = field(default_factory=dict)

    def projection(self, name: str) -> Projection | None:
        return self.projections.get(name)


def build_container(
    *,
    backend: str | None = None,
    gateway: MessagingGateway | None = None,
    intent_detector: IntentDetector | None = None,
    enqueue: Enqueue | None = None,
    chat_model: ChatModel | None = None,
) -> Container:
    """Build the object graph; projections subscribe before the process manager."""

    backend = backend or settings.event_bus_backend
    store = SqlAlchemyEventStore()
    bus = EventBus()
    if backend == "celery":
        publisher: EventPublisher = CeleryEventPublisher(_send_to_worker)
    else:
        publisher = LocalEventPublisher(bus)

    projections: list[Projection] = [
        PatientProjection(),
        ConversationProjection(),
        AppointmentProjection(),
        PatientJourneyProjection(),
    ]
    for projection in projections:
        projection.register(bus)

    journey_repository = AggregateRepository(PatientJourney, store, publisher)
    PatientJourneyProcessManager(journey_repository, store).register(bus)
    ReminderScheduler(enqueue or _enqueue_task).register(bus)

    conversation_repository = AggregateRepository(Conversation, store, publisher)
    clinic_settings = ClinicSettingsService()
    appointments = AppointmentService(
        AggregateRepository(Appointment, store, publisher), clinic_settings
    )
    if chat_model is None and settings.openai_api_key:
        chat_model = OpenAIChatModel()
    container = Container(
        store=store,
        bus=bus,
        publisher=publisher,
        patients=PatientService(AggregateRepository(Patient, store, publisher)),
        appointments=appointments,
        conversations=ConversationService(conversation_repository),
        receive_message=ReceiveMessageHandler(conversation_repository, intent_detector),
        send_message=SendMessageHandler(
            conversation_repository, gateway or EvolutionMessagingGateway()
        ),
        journeys=PatientJourneyService(journey_repository),
        clinic_settings=clinic_settings,
        carol_chat=CarolChatService(clinic_settings, appointments, chat_model),
        rebuilder=ProjectionRebuilder(store),
        projections={projection.name: projection for projection in projections},
    )
    logger.debug("container built", extra={"event_bus_backend": backend})
    return container


@lru_cache(maxsize=1)
def get_container() -> Container:
    """Return the process-wide container."""

    return build_container()

from __future__ import annotations

import uuid
from typing import Any

from celery.utils.log import get_task_logger
from sqlalchemy.orm import Session

from healz.appointment.aggregate import OPEN_STATUSES
from healz.conversation.service import persist_message_log
from healz.core.clock import clinic_timezone, ensure_utc, parse_iso, utcnow
from healz.core.config import settings
from healz.db.session import SessionLocal, session_scope
from healz.event_sourcing.domain_event import DomainEvent
from healz.logging_utils import correlation_scope, set_tenant_context
from healz.models import AppointmentView, Clinic, PatientView
from healz.services.whatsapp_client import send_template
from healz.services.whatsapp_templates import REMINDER_TEMPLATES
from healz.wiring import get_container
from jobs.celery_app import celery_app

logger = get_task_logger(__name__)


@celery_app.task(
    name="jobs.dispatch_event",
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_jitter=False,
    max_retries=settings.event_dispatch_max_retries,
)
def dispatch_event(self, payload: dict[str, Any]) -> dict[str, Any]:
    """Run the bus handlers for an event committed by another process."""

    event = DomainEvent.from_dict(payload)
    set_tenant_context(event.tenant_id)
    try:
        with correlation_scope(event.correlation_id):
            with session_scope(SessionLocal) as session:
                get_container().bus.dispatch(session, event)
    except Exception:
        if self.request.retries >= self.max_retries:
            logger.error(
                "event dispatch gave up after %s retries: %s %s",
                self.request.retries,
                event.event_type,
                event.event_id,
            )
        raise
    return {"event_id": event.event_id, "event_type": event.event_type}


def _open_appointment(
    session: Session, appointment_id: str, scheduled_start: str | None
) -> AppointmentView | None:
    """Return the appointment if it is still open at the time the task was planned for."""

    appointment = session.get(AppointmentView, uuid.UUID(appointment_id))
    if appointment is None or appointment.status not in OPEN_STATUSES:
        return None
    if scheduled_start and ensure_utc(appointment.scheduled_at) != parse_iso(scheduled_start):
        return None
    return appointment


def _send_reminder(
    appointment_id: str, scheduled_start: str | None, window: str
) -> dict[str, Any]:
    with session_scope(SessionLocal) as session:
        appointment = _open_appointment(session, appointment_id, scheduled_start)
        if appointment is None:
            logger.info("Skipping stale %s reminder for appointment %s", window, appointment_id)
            return {"appointment_id": appointment_id, "reminder_window": window, "sent": False}

        set_tenant_context(str(appointment.tenant_id))
        patient = session.get(PatientView, appointment.patient_id)
        if patient is None:
            logger.warning("Appointment %s has no projected patient", appointment_id)
            return {"appointment_id": appointment_id, "reminder_window": window, "sent": False}

        clinic = session.get(Clinic, appointment.clinic_id)
        tz = clinic_timezone(clinic.timezone if clinic else None)
        local_start = ensure_utc(appointment.scheduled_at).astimezone(tz)
        template_name = REMINDER_TEMPLATES[window]

        message_id, response, request = send_template(
            to=patient.phone,
            template_name=template_name,
            variables=[local_start.strftime("%H:%M")],
        )
        persist_message_log(
            session,
            tenant_id=str(appointment.tenant_id),
            conversation_id=None,
            channel="whatsapp",
            recipient=patient.phone,
            payload={"request": request, "response": response},
            metadata={
                "direction": "outbound",
                "type": "template",
                "template": template_name,
                "appointment_id": appointment_id,
                "wa_message_id": message_id,
            },
            status="sent",
            sent_at=utcnow(),
        )
    logger.info("Sent %s reminder for appointment %s", window, appointment_id)
    return {"appointment_id": appointment_id, "reminder_window": window, "sent": True}


@celery_app.task(name="jobs.send_reminder_d1")
def send_reminder_d1(
    appointment_id: str, scheduled_start: str | None = None
) -> dict[str, Any]:
    """Send the D-1 reminder (one day before)."""

    return _send_reminder(appointment_id, scheduled_start, "d1")


@celery_app.task(name="jobs.send_reminder_h2")
def send_reminder_h2(
    appointment_id: str, scheduled_start: str | None = None
) -> dict[str, Any]:
    """Send the H-2 reminder (two hours before)."""

    return _send_reminder(appointment_id, scheduled_start, "h2")


@celery_app.task(name="jobs.flag_no_show")
def flag_no_show(
    appointment_id: str, scheduled_start: str | None = None
) -> dict[str, Any]:
    """Flag an appointment still open after its end time for staff follow-up."""

    with session_scope(SessionLocal) as session:
        appointment = _open_appointment(session, appointment_id, scheduled_start)
        flagged = appointment is not None
    if flagged:
        logger.warning(
            "Appointment %s is still open after its end time; possible no-show",
            appointment_id,
        )
    return {"appointment_id": appointment_id, "flagged": flagged}

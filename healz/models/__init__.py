"""SQLAlchemy models for the Healz API."""

from healz.models.appointment_view import AppointmentView
from healz.models.audit_log import AuditLog
from healz.models.clinic import (
    Clinic,
    ClinicMember,
    ClinicStatus,
    MemberRole,
    MemberStatus,
)
from healz.models.clinic_settings import ClinicInvite, ClinicSetting
from healz.models.conversation_view import ConversationView, MessageView
from healz.models.event import StoredEvent
from healz.models.message_log import MessageLog
from healz.models.organization import Organization, OrganizationStatus
from healz.models.patient_journey_view import PatientJourneyView
from healz.models.patient_view import PatientView

__all__ = [
    "AppointmentView",
    "AuditLog",
    "Clinic",
    "ClinicInvite",
    "ClinicMember",
    "ClinicSetting",
    "ClinicStatus",
    "ConversationView",
    "MemberRole",
    "MemberStatus",
    "MessageLog",
    "MessageView",
    "Organization",
    "OrganizationStatus",
    "PatientJourneyView",
    "PatientView",
    "StoredEvent",
]

"""Import SQLAlchemy models for Alembic's autogenerate feature."""

from healz.models.base import Base
from healz.models import (  # noqa: F401
    AppointmentView,
    AuditLog,
    Clinic,
    ClinicInvite,
    ClinicMember,
    ClinicSetting,
    ConversationView,
    MessageLog,
    MessageView,
    Organization,
    PatientJourneyView,
    PatientView,
    StoredEvent,
)

__all__ = [
    "Base",
    "AppointmentView",
    "AuditLog",
    "Clinic",
    "ClinicInvite",
    "ClinicMember",
    "ClinicSetting",
    "ConversationView",
    "MessageLog",
    "MessageView",
    "Organization",
    "PatientJourneyView",
    "PatientView",
    "StoredEvent",
]

from __future__ import annotations

import enum
import uuid

from sqlalchemy import Enum, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from healz.models.base import Base, JSONType, TimestampMixin


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [item.value for item in enum_cls]


class ClinicStatus(str, enum.Enum):
    """Operational states for a clinic."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class MemberRole(str, enum.Enum):
    """Staff roles available within a clinic."""

    ADMIN = "admin"
    MANAGER = "manager"
    DOCTOR = "doctor"
    RECEPTIONIST = "receptionist"


class MemberStatus(str, enum.Enum):
    """Membership states for clinic staff."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class Clinic(Base, TimestampMixin):
    """Operational unit of an organization; scope for staff and patient data."""

    __tablename__ = "clinics"
    __table_args__ = (UniqueConstraint("organization_id", "slug"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    address: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    timezone: Mapped[str] = mapped_column(String(50), default="America/Sao_Paulo")
    settings: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[ClinicStatus] = mapped_column(
        Enum(ClinicStatus, name="clinic_status", values_callable=_enum_values),
        default=ClinicStatus.ACTIVE,
        nullable=False,
    )


class ClinicMember(Base, TimestampMixin):
    """Staff membership binding a user to a clinic with a role."""

    __tablename__ = "clinic_members"
    __table_args__ = (UniqueConstraint("clinic_id", "user_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    clinic_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("clinics.id", ondelete="CASCADE"), index=True
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    role: Mapped[MemberRole] = mapped_column(
        Enum(MemberRole, name="member_role", values_callable=_enum_values),
        default=MemberRole.RECEPTIONIST,
        nullable=False,
    )
    custom_permissions: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[MemberStatus] = mapped_column(
        Enum(MemberStatus, name="member_status", values_callable=_enum_values),
        default=MemberStatus.ACTIVE,
        nullable=False,
    )

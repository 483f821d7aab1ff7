from __future__ import annotations

import enum
import uuid

from sqlalchemy import Enum, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from healz.models.base import Base, TimestampMixin


class OrganizationStatus(str, enum.Enum):
    """Lifecycle states for a tenant organization."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class Organization(Base, TimestampMixin):
    """Top-level tenant owning one or more clinics."""

    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    status: Mapped[OrganizationStatus] = mapped_column(
        Enum(
            OrganizationStatus,
            name="organization_status",
            values_callable=lambda enum_cls: [item.value for item in enum_cls],
        ),
        default=OrganizationStatus.ACTIVE,
        nullable=False,
    )

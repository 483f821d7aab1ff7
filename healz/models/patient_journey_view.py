from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from healz.models.base import Base, JSONType, ProjectionMixin


class PatientJourneyView(Base, ProjectionMixin):
    """Read model of the ``PatientJourney`` aggregate."""

    __tablename__ = "patient_journey_view"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    patient_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    clinic_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)

    current_stage: Mapped[str] = mapped_column(
        String(50), nullable=False, default="lead", index=True
    )
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    risk_level: Mapped[str] = mapped_column(
        String(20), nullable=False, default="low", index=True
    )

    milestones: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    stage_history: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from healz.core.clock import utcnow
from healz.models.base import Base, JSONType


class StoredEvent(Base):
    """Append-only row of the event store; ``id`` gives the global order."""

    __tablename__ = "events"
    __table_args__ = (
        UniqueConstraint(
            "aggregate_id", "aggregate_version", name="uq_events_aggregate_version"
        ),
        Index("ix_events_aggregate", "aggregate_type", "aggregate_id"),
        Index("ix_events_correlation_id", "correlation_id"),
        Index("ix_events_causation_id", "causation_id"),
        Index("ix_events_tenant_id", "tenant_id"),
        Index("ix_events_event_type", "event_type"),
        Index("ix_events_created_at", "created_at"),
    )

    # SQLite only autoincrements INTEGER primary keys.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    event_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)

    aggregate_type: Mapped[str] = mapped_column(String(50), nullable=False)
    aggregate_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    aggregate_version: Mapped[int] = mapped_column(Integer, nullable=False)

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    clinic_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    causation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    correlation_id: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    event_data: Mapped[dict] = mapped_column(JSONType, nullable=False)
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata", JSONType, nullable=True, default=dict
    )

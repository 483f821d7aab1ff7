from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from healz.models.base import Base, ProjectionMixin


class ConversationView(Base, ProjectionMixin):
    """Read model of the ``Conversation`` aggregate."""

    __tablename__ = "conversation_view"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    patient_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    clinic_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="active", index=True
    )
    channel: Mapped[str] = mapped_column(String(20), nullable=False)

    is_escalated: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    escalation_reason: Mapped[str | None] = mapped_column(String(30), nullable=True)
    escalated_to_user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    escalated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    last_message_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    message_count: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class MessageView(Base):
    """One row per message exchanged in a conversation."""

    __tablename__ = "message_view"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    conversation_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    from_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    to_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)

    content: Mapped[str] = mapped_column(Text, nullable=False)
    message_type: Mapped[str] = mapped_column(String(20), default="text")
    media_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    sent_by: Mapped[str | None] = mapped_column(String(20), nullable=True)

    intent: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    intent_confidence: Mapped[Decimal | None] = mapped_column(
        Numeric(3, 2), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )

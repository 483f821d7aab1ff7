"""Keeps ``conversation_view`` and ``message_view`` in step with conversation events."""

from __future__ import annotations

import uuid
from decimal import Decimal

from sqlalchemy.orm import Session

from healz.conversation.aggregate import (
    ACTIVE,
    CONVERSATION_ESCALATED,
    CONVERSATION_RESOLVED,
    CONVERSATION_STARTED,
    ESCALATED,
    INTENT_DETECTED,
    MESSAGE_RECEIVED,
    MESSAGE_SENT,
    RESOLVED,
)
from healz.core.clock import ensure_utc, parse_iso
from healz.event_sourcing.domain_event import DomainEvent
from healz.event_sourcing.projection import Projection, handles
from healz.models import ConversationView, MessageView


class ConversationProjection(Projection):
    name = "conversation_view"
    tables = (MessageView, ConversationView)

    @handles(CONVERSATION_STARTED)
    def on_started(self, session: Session, event: DomainEvent) -> None:
        data = event.event_data
        if session.get(ConversationView, uuid.UUID(event.aggregate_id)) is not None:
            return
        created_at = ensure_utc(event.created_at)
        session.add(
            ConversationView(
                id=uuid.UUID(event.aggregate_id),
                patient_id=uuid.UUID(data["patient_id"]),
                tenant_id=uuid.UUID(data["tenant_id"]),
                clinic_id=uuid.UUID(data["clinic_id"]),
                status=ACTIVE,
                channel=data["channel"],
                is_escalated=False,
                message_count=0,
                last_event_version=event.aggregate_version,
                created_at=created_at,
                updated_at=created_at,
            )
        )
        session.flush()

    @handles(MESSAGE_RECEIVED)
    def on_message_received(self, session: Session, event: DomainEvent) -> None:
        row = self.current_row(session, ConversationView, event)
        if row is None:
            return
        data = event.event_data
        received_at = parse_iso(data["received_at"])
        self._add_message(
            session,
            MessageView(
                id=uuid.UUID(data["message_id"]),
                conversation_id=row.id,
                tenant_id=row.tenant_id,
                direction="incoming",
                from_phone=data.get("from_phone"),
                content=data.get("content") or "",
                message_type=data.get("message_type", "text"),
                media_url=data.get("media_url"),
                sent_by="patient",
                created_at=received_at,
            ),
        )
        row.message_count = (row.message_count or 0) + 1
        row.last_message_at = received_at
        self.touch(session, row, event)

    @handles(MESSAGE_SENT)
    def on_message_sent(self, session: Session, event: DomainEvent) -> None:
        row = self.current_row(session, ConversationView, event)
        if row is None:
            return
        data = event.event_data
        sent_at = parse_iso(data["sent_at"])
        self._add_message(
            session,
            MessageView(
                id=uuid.UUID(data["message_id"]),
                conversation_id=row.id,
                tenant_id=row.tenant_id,
                direction="outgoing",
                to_phone=data.get("to_phone"),
                content=data.get("content") or "",
                message_type=data.get("message_type", "text"),
                media_url=data.get("media_url"),
                sent_by=data.get("sent_by"),
                created_at=sent_at,
            ),
        )
        row.message_count = (row.message_count or 0) + 1
        row.last_message_at = sent_at
        self.touch(session, row, event)

    @handles(INTENT_DETECTED)
    def on_intent_detected(self, session: Session, event: DomainEvent) -> None:
        row = self.current_row(session, ConversationView, event)
        if row is None:
            return
        data = event.event_data
        message = session.get(MessageView, uuid.UUID(data["message_id"]))
        if message is not None:
            message.intent = data["intent"]
            message.intent_confidence = Decimal(str(round(float(data["confidence"]), 2)))
        self.touch(session, row, event)

    @handles(CONVERSATION_ESCALATED)
    def on_escalated(self, session: Session, event: DomainEvent) -> None:
        row = self.current_row(session, ConversationView, event)
        if row is None:
            return
        data = event.event_data
        row.status = ESCALATED
        row.is_escalated = True
        row.escalation_reason = data.get("reason")
        row.escalated_to_user_id = data.get("escalated_to_user_id")
        row.escalated_at = parse_iso(data["escalated_at"])
        self.touch(session, row, event)

    @handles(CONVERSATION_RESOLVED)
    def on_resolved(self, session: Session, event: DomainEvent) -> None:
        row = self.current_row(session, ConversationView, event)
        if row is None:
            return
        row.status = RESOLVED
        row.resolved_at = parse_iso(event.event_data["resolved_at"])
        self.touch(session, row, event)

    @staticmethod
    def _add_message(session: Session, message: MessageView) -> None:
        if session.get(MessageView, message.id) is not None:
            return
        session.add(message)
        session.flush()

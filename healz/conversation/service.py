"""Command handlers and queries for conversations."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from healz.conversation.aggregate import ACTIVE, ESCALATED, Conversation
from healz.conversation.ports import (
    ConversationContext,
    IntentDetection,
    IntentDetector,
    MessagingGateway,
    OutgoingMessage,
)
from healz.core.config import settings
from healz.event_sourcing.domain_event import propagate_or_generate
from healz.event_sourcing.errors import AggregateNotFound, InvariantViolation
from healz.event_sourcing.repository import AggregateRepository
from healz.logging_utils import correlation_scope
from healz.models import ConversationView, MessageLog, MessageView, PatientView

logger = logging.getLogger(__name__)

UNKNOWN_INTENT = "unknown"


@dataclass
class ReceiveMessageCommand:
    tenant_id: str
    clinic_id: str
    patient_id: str
    from_phone: str
    content: str
    conversation_id: str | None = None
    message_type: str = "text"
    media_url: str | None = None
    external_id: str | None = None
    channel: str = "whatsapp"
    intent: str | None = None
    confidence: float | None = None
    entities: dict[str, Any] = field(default_factory=dict)
    correlation_id: str | None = None


@dataclass(frozen=True)
class ReceiveMessageResult:
    conversation_id: str
    message_id: str
    correlation_id: str
    intent: str | None
    confidence: float | None
    escalated: bool


@dataclass
class SendMessageCommand:
    tenant_id: str
    conversation_id: str
    content: str
    sent_by: str = "agent"
    to_phone: str | None = None
    message_type: str = "text"
    media_url: str | None = None
    user_id: str | None = None
    correlation_id: str | None = None


@dataclass(frozen=True)
class SendMessageResult:
    conversation_id: str
    message_id: str
    delivery_id: str
    status: str
    correlation_id: str


def persist_message_log(
    session: Session,
    *,
    tenant_id: str,
    conversation_id: str | None,
    channel: str,
    recipient: str | None,
    payload: Any,
    metadata: dict[str, Any] | None,
    status: str,
    sent_at: datetime | None,
) -> MessageLog:
    """Persist a record in the message log table."""

    payload_value = (
        payload
        if isinstance(payload, str)
        else json.dumps(payload, ensure_ascii=False, default=str)
    )
    log_entry = MessageLog(
        tenant_id=uuid.UUID(str(tenant_id)),
        conversation_id=uuid.UUID(str(conversation_id)) if conversation_id else None,
        channel=channel,
        recipient=recipient,
        payload=payload_value,
        metadata_json=metadata,
        status=status,
        sent_at=sent_at,
    )
    session.add(log_entry)
    session.flush()
    return log_entry


def _load_for_tenant(
    repository: AggregateRepository[Conversation],
    session: Session,
    conversation_id: str,
    tenant_id: str,
) -> Conversation:
    conversation = repository.load(session, str(conversation_id))
    if conversation.tenant_id != str(tenant_id):
        raise AggregateNotFound(Conversation.aggregate_type, str(conversation_id))
    return conversation


class ReceiveMessageHandler:
    """Record an inbound patient message and let Carol classify it.

    The conversation is started on first contact. A low-confidence
    classification hands the conversation to a human.
    """

    def __init__(
        self,
        repository: AggregateRepository[Conversation],
        intent_detector: IntentDetector | None = None,
    ) -> None:
        self.repository = repository
        self.intent_detector = intent_detector

    def execute(self, session: Session, command: ReceiveMessageCommand) -> ReceiveMessageResult:
        correlation = propagate_or_generate(command.correlation_id, "receive-message")
        with correlation_scope(correlation):
            conversation = None
            if command.conversation_id:
                conversation = self.repository.find(session, command.conversation_id)
                if conversation is not None and conversation.tenant_id != str(command.tenant_id):
                    raise AggregateNotFound(
                        Conversation.aggregate_type, str(command.conversation_id)
                    )
            if conversation is None:
                conversation = Conversation.start(
                    conversation_id=command.conversation_id or str(uuid.uuid4()),
                    patient_id=command.patient_id,
                    clinic_id=command.clinic_id,
                    tenant_id=command.tenant_id,
                    channel=command.channel,
                    started_by="patient",
                    correlation_id=correlation,
                )

            message_id = str(uuid.uuid4())
            received = conversation.receive_message(
                message_id=message_id,
                from_phone=command.from_phone,
                content=command.content,
                message_type=command.message_type,
                media_url=command.media_url,
                external_id=command.external_id,
                correlation_id=correlation,
            )

            detection = self._classify(command, conversation)
            if detection is not None and detection.intent != UNKNOWN_INTENT:
                conversation.detect_intent(
                    message_id=message_id,
                    intent=detection.intent,
                    confidence=detection.confidence,
                    entities=detection.entities,
                    correlation_id=correlation,
                    causation_id=received.event_id,
                )

            escalated = False
            if (
                detection is not None
                and detection.confidence < settings.carol_escalation_confidence
                and not conversation.is_escalated
            ):
                conversation.escalate(
                    reason="low_confidence",
                    correlation_id=correlation,
                    causation_id=received.event_id,
                )
                escalated = True

            self.repository.save(session, conversation)

        if escalated:
            logger.info(
                "conversation escalated for low confidence",
                extra={"conversation_id": conversation.id, "confidence": detection.confidence},
            )
        return ReceiveMessageResult(
            conversation_id=conversation.id,
            message_id=message_id,
            correlation_id=correlation,
            intent=detection.intent if detection else None,
            confidence=detection.confidence if detection else None,
            escalated=escalated,
        )

    def _classify(
        self, command: ReceiveMessageCommand, conversation: Conversation
    ) -> IntentDetection | None:
        if command.intent:
            confidence = 1.0 if command.confidence is None else command.confidence
            return IntentDetection(command.intent, confidence, dict(command.entities))
        if self.intent_detector is None or not command.content:
            return None
        return self.intent_detector.detect_intent(
            command.content,
            ConversationContext(
                conversation_id=conversation.id, patient_id=conversation.patient_id
            ),
        )


class SendMessageHandler:
    """Record an outbound message and deliver it through the gateway."""

    def __init__(
        self,
        repository: AggregateRepository[Conversation],
        gateway: MessagingGateway,
    ) -> None:
        self.repository = repository
        self.gateway = gateway

    def execute(self, session: Session, command: SendMessageCommand) -> SendMessageResult:
        correlation = propagate_or_generate(command.correlation_id, "send-message")
        with correlation_scope(correlation):
            conversation = _load_for_tenant(
                self.repository, session, command.conversation_id, command.tenant_id
            )
            to_phone = command.to_phone or self._patient_phone(session, conversation)

            message_id = str(uuid.uuid4())
            conversation.send_message(
                message_id=message_id,
                to_phone=to_phone,
                content=command.content,
                sent_by=command.sent_by,
                message_type=command.message_type,
                media_url=command.media_url,
                correlation_id=correlation,
                user_id=command.user_id,
            )
            self.repository.save(session, conversation)

            delivery = self.gateway.send_message(
                OutgoingMessage(
                    to=to_phone,
                    content=command.content,
                    type=command.message_type,
                    media_url=command.media_url,
                    metadata={"conversation_id": conversation.id, "message_id": message_id},
                )
            )
            persist_message_log(
                session,
                tenant_id=conversation.tenant_id,
                conversation_id=conversation.id,
                channel=conversation.channel,
                recipient=to_phone,
                payload={"request": delivery.request, "response": delivery.response},
                metadata={
                    "direction": "outbound",
                    "message_id": message_id,
                    "wa_message_id": delivery.message_id,
                    "sent_by": command.sent_by,
                    "correlation_id": correlation,
                },
                status=delivery.status,
                sent_at=delivery.timestamp,
            )

        return SendMessageResult(
            conversation_id=conversation.id,
            message_id=message_id,
            delivery_id=delivery.message_id,
            status=delivery.status,
            correlation_id=correlation,
        )

    @staticmethod
    def _patient_phone(session: Session, conversation: Conversation) -> str:
        patient = session.get(PatientView, uuid.UUID(conversation.patient_id))
        if patient is None:
            raise InvariantViolation("Conversation patient has no known phone")
        return patient.phone


class ConversationService:
    def __init__(self, repository: AggregateRepository[Conversation]) -> None:
        self.repository = repository

    def escalate(
        self,
        session: Session,
        conversation_id: str,
        *,
        tenant_id: str,
        reason: str = "manual_request",
        escalated_to_user_id: str | None = None,
        user_id: str | None = None,
        correlation_id: str | None = None,
    ) -> Conversation:
        correlation = propagate_or_generate(correlation_id, "escalate-conversation")
        with correlation_scope(correlation):
            conversation = _load_for_tenant(
                self.repository, session, conversation_id, tenant_id
            )
            conversation.escalate(
                reason=reason,
                escalated_to_user_id=escalated_to_user_id,
                correlation_id=correlation,
                user_id=user_id,
            )
            self.repository.save(session, conversation)
        return conversation

    def resolve(
        self,
        session: Session,
        conversation_id: str,
        *,
        tenant_id: str,
        resolved_by: str | None = None,
        correlation_id: str | None = None,
    ) -> Conversation:
        correlation = propagate_or_generate(correlation_id, "resolve-conversation")
        with correlation_scope(correlation):
            conversation = _load_for_tenant(
                self.repository, session, conversation_id, tenant_id
            )
            conversation.resolve(
                resolved_by=resolved_by, correlation_id=correlation, user_id=resolved_by
            )
            self.repository.save(session, conversation)
        return conversation

    def load(self, session: Session, conversation_id: str, tenant_id: str) -> Conversation:
        return _load_for_tenant(self.repository, session, conversation_id, tenant_id)

    @staticmethod
    def open_conversation_for(
        session: Session, tenant_id: str, patient_id: str, channel: str = "whatsapp"
    ) -> ConversationView | None:
        """Return the patient's newest conversation that is not resolved."""

        stmt = (
            select(ConversationView)
            .where(
                ConversationView.tenant_id == uuid.UUID(str(tenant_id)),
                ConversationView.patient_id == uuid.UUID(str(patient_id)),
                ConversationView.channel == channel,
                ConversationView.status.in_([ACTIVE, ESCALATED]),
            )
            .order_by(ConversationView.created_at.desc())
            .limit(1)
        )
        return session.execute(stmt).scalars().first()

    @staticmethod
    def list_messages(
        session: Session, tenant_id: str, conversation_id: str
    ) -> list[MessageView]:
        conversation = session.get(ConversationView, uuid.UUID(str(conversation_id)))
        if conversation is None or conversation.tenant_id != uuid.UUID(str(tenant_id)):
            raise AggregateNotFound(Conversation.aggregate_type, str(conversation_id))
        stmt = (
            select(MessageView)
            .where(MessageView.conversation_id == conversation.id)
            .order_by(MessageView.created_at)
        )
        return list(session.execute(stmt).scalars().all())


def serialize_message(row: MessageView) -> dict[str, Any]:
    return {
        "id": str(row.id),
        "conversation_id": str(row.conversation_id),
        "direction": row.direction,
        "from_phone": row.from_phone,
        "to_phone": row.to_phone,
        "content": row.content,
        "message_type": row.message_type,
        "media_url": row.media_url,
        "sent_by": row.sent_by,
        "intent": row.intent,
        "intent_confidence": (
            float(row.intent_confidence) if row.intent_confidence is not None else None
        ),
        "created_at": row.created_at.isoformat(),
    }

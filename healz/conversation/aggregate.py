"""Conversation aggregate: the message exchange between a patient and the clinic."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from healz.core.clock import parse_iso, utcnow
from healz.core.config import settings
from healz.event_sourcing.aggregate import AggregateRoot, applies
from healz.event_sourcing.domain_event import DomainEvent
from healz.event_sourcing.errors import InvariantViolation

CONVERSATION_STARTED = "ConversationStarted"
MESSAGE_RECEIVED = "MessageReceived"
MESSAGE_SENT = "MessageSent"
INTENT_DETECTED = "IntentDetected"
CONVERSATION_ESCALATED = "ConversationEscalated"
CONVERSATION_RESOLVED = "ConversationResolved"

ACTIVE = "active"
ESCALATED = "escalated"
RESOLVED = "resolved"
ABANDONED = "abandoned"

CHANNELS = frozenset({"whatsapp", "web", "sms"})
STARTERS = frozenset({"patient", "agent", "system"})
SENDERS = frozenset({"bot", "agent", "system"})
MESSAGE_TYPES = frozenset({"text", "image", "document", "audio", "video"})
ESCALATION_REASONS = frozenset(
    {"manual_request", "low_confidence", "sensitive_topic", "error"}
)


class Conversation(AggregateRoot):
    aggregate_type = "Conversation"

    def __init__(self) -> None:
        super().__init__()
        self.patient_id: str | None = None
        self.channel = "whatsapp"
        self.status = ACTIVE
        self.is_escalated = False
        self.escalated_to_user_id: str | None = None
        self.consecutive_bot_messages = 0
        self.last_message_at: datetime | None = None
        self.message_count = 0

    @classmethod
    def start(
        cls,
        *,
        conversation_id: str,
        patient_id: str,
        clinic_id: str,
        tenant_id: str,
        correlation_id: str,
        channel: str = "whatsapp",
        started_by: str = "patient",
        user_id: str | None = None,
    ) -> "Conversation":
        if channel not in CHANNELS:
            raise InvariantViolation(f"Unsupported channel {channel!r}")
        if started_by not in STARTERS:
            raise InvariantViolation(f"Unsupported conversation starter {started_by!r}")
        conversation = cls()
        conversation._raise_event(
            CONVERSATION_STARTED,
            {
                "conversation_id": str(conversation_id),
                "patient_id": str(patient_id),
                "clinic_id": str(clinic_id),
                "tenant_id": str(tenant_id),
                "channel": channel,
                "started_by": started_by,
            },
            correlation_id=correlation_id,
            user_id=user_id,
            aggregate_id=str(conversation_id),
            tenant_id=str(tenant_id),
            clinic_id=str(clinic_id),
        )
        return conversation

    def receive_message(
        self,
        *,
        message_id: str,
        from_phone: str,
        content: str,
        correlation_id: str,
        message_type: str = "text",
        media_url: str | None = None,
        external_id: str | None = None,
        causation_id: str | None = None,
    ) -> DomainEvent:
        if self.status == RESOLVED:
            raise InvariantViolation("Cannot receive message on resolved conversation")
        self._check_message_type(message_type)
        return self._raise_event(
            MESSAGE_RECEIVED,
            {
                "conversation_id": self.id,
                "patient_id": self.patient_id,
                "message_id": str(message_id),
                "external_id": external_id,
                "from_phone": from_phone,
                "content": content,
                "message_type": message_type,
                "media_url": media_url,
                "received_at": utcnow().isoformat(),
            },
            correlation_id=correlation_id,
            causation_id=causation_id,
        )

    def send_message(
        self,
        *,
        message_id: str,
        to_phone: str,
        content: str,
        sent_by: str,
        correlation_id: str,
        message_type: str = "text",
        media_url: str | None = None,
        causation_id: str | None = None,
        user_id: str | None = None,
    ) -> DomainEvent:
        if self.status == RESOLVED:
            raise InvariantViolation("Cannot send message on resolved conversation")
        if sent_by not in SENDERS:
            raise InvariantViolation(f"Unsupported sender {sent_by!r}")
        self._check_message_type(message_type)

        limit = settings.carol_max_consecutive_bot_messages
        if sent_by == "bot" and self.consecutive_bot_messages >= limit:
            raise InvariantViolation(
                f"Cannot send more than {limit} consecutive bot messages"
            )

        return self._raise_event(
            MESSAGE_SENT,
            {
                "conversation_id": self.id,
                "patient_id": self.patient_id,
                "message_id": str(message_id),
                "to_phone": to_phone,
                "content": content,
                "message_type": message_type,
                "media_url": media_url,
                "sent_by": sent_by,
                "sent_at": utcnow().isoformat(),
            },
            correlation_id=correlation_id,
            causation_id=causation_id,
            user_id=user_id,
        )

    def detect_intent(
        self,
        *,
        message_id: str,
        intent: str,
        confidence: float,
        correlation_id: str,
        entities: dict[str, Any] | None = None,
        causation_id: str | None = None,
    ) -> DomainEvent:
        if not 0.0 <= confidence <= 1.0:
            raise InvariantViolation("Intent confidence must be between 0 and 1")
        return self._raise_event(
            INTENT_DETECTED,
            {
                "conversation_id": self.id,
                "message_id": str(message_id),
                "intent": intent,
                "confidence": confidence,
                "entities": entities or {},
                "detected_at": utcnow().isoformat(),
            },
            correlation_id=correlation_id,
            causation_id=causation_id,
        )

    def escalate(
        self,
        *,
        reason: str,
        correlation_id: str,
        escalated_to_user_id: str | None = None,
        causation_id: str | None = None,
        user_id: str | None = None,
    ) -> DomainEvent:
        if self.is_escalated:
            raise InvariantViolation("Conversation already escalated")
        if self.status == RESOLVED:
            raise InvariantViolation("Cannot escalate a resolved conversation")
        if reason not in ESCALATION_REASONS:
            raise InvariantViolation(f"Unsupported escalation reason {reason!r}")
        return self._raise_event(
            CONVERSATION_ESCALATED,
            {
                "conversation_id": self.id,
                "reason": reason,
                "escalated_to_user_id": escalated_to_user_id,
                "escalated_at": utcnow().isoformat(),
            },
            correlation_id=correlation_id,
            causation_id=causation_id,
            user_id=user_id,
        )

    def resolve(
        self,
        *,
        correlation_id: str,
        resolved_by: str | None = None,
        user_id: str | None = None,
    ) -> DomainEvent:
        if self.status == RESOLVED:
            raise InvariantViolation("Conversation already resolved")
        return self._raise_event(
            CONVERSATION_RESOLVED,
            {
                "conversation_id": self.id,
                "resolved_by": resolved_by,
                "resolved_at": utcnow().isoformat(),
            },
            correlation_id=correlation_id,
            user_id=user_id,
        )

    @staticmethod
    def _check_message_type(message_type: str) -> None:
        if message_type not in MESSAGE_TYPES:
            raise InvariantViolation(f"Unsupported message type {message_type!r}")

    @applies(CONVERSATION_STARTED)
    def _on_started(self, event: DomainEvent) -> None:
        data = event.event_data
        self.id = data["conversation_id"]
        self.patient_id = data["patient_id"]
        self.clinic_id = data["clinic_id"]
        self.tenant_id = data["tenant_id"]
        self.channel = data["channel"]
        self.status = ACTIVE
        self.is_escalated = False
        self.consecutive_bot_messages = 0

    @applies(MESSAGE_RECEIVED)
    def _on_message_received(self, event: DomainEvent) -> None:
        self.consecutive_bot_messages = 0
        self.message_count += 1
        self.last_message_at = parse_iso(event.event_data["received_at"])

    @applies(MESSAGE_SENT)
    def _on_message_sent(self, event: DomainEvent) -> None:
        if event.event_data["sent_by"] == "bot":
            self.consecutive_bot_messages += 1
        else:
            self.consecutive_bot_messages = 0
        self.message_count += 1
        self.last_message_at = parse_iso(event.event_data["sent_at"])

    @applies(CONVERSATION_ESCALATED)
    def _on_escalated(self, event: DomainEvent) -> None:
        self.is_escalated = True
        self.status = ESCALATED
        self.escalated_to_user_id = event.event_data.get("escalated_to_user_id")

    @applies(CONVERSATION_RESOLVED)
    def _on_resolved(self, event: DomainEvent) -> None:
        self.status = RESOLVED

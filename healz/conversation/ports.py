"""Interfaces the conversation module depends on."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol


@dataclass(frozen=True)
class IntentDetection:
    intent: str
    confidence: float
    entities: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ConversationContext:
    conversation_id: str
    patient_id: str
    last_intent: str | None = None


class IntentDetector(Protocol):
    """Classifies inbound patient messages for Carol."""

    def detect_intent(
        self, message: str, context: ConversationContext | None = None
    ) -> IntentDetection:
        ...


@dataclass(frozen=True)
class OutgoingMessage:
    to: str
    content: str
    type: str = "text"
    media_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeliveryStatus:
    message_id: str
    status: str
    timestamp: datetime
    request: dict[str, Any] = field(default_factory=dict)
    response: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


class MessagingGateway(Protocol):
    """Delivers outbound messages to a patient's channel."""

    def send_message(self, message: OutgoingMessage) -> DeliveryStatus:
        ...

import uuid

import pytest
from sqlalchemy import select

from healz.conversation.aggregate import (
    CONVERSATION_ESCALATED,
    INTENT_DETECTED,
    MESSAGE_RECEIVED,
    Conversation,
)
from healz.conversation.service import ReceiveMessageCommand, SendMessageCommand
from healz.event_sourcing import AggregateNotFound, InvariantViolation
from healz.models import ConversationView, MessageLog, MessageView
from healz.wiring import build_container

from conftest import FixedIntentDetector, new_id


def start_conversation():
    conversation = Conversation.start(
        conversation_id=new_id(),
        patient_id=new_id(),
        clinic_id=new_id(),
        tenant_id=new_id(),
        correlation_id="corr",
    )
    conversation.mark_committed()
    return conversation


def bot_reply(conversation, content="Olá!"):
    return conversation.send_message(
        message_id=new_id(),
        to_phone="+5585987654321",
        content=content,
        sent_by="bot",
        correlation_id="corr",
    )


@pytest.fixture()
def patient(session, container):
    return container.patients.register(
        session, tenant_id=new_id(), clinic_id=new_id(), phone="+5585987654321"
    )


def receive(container, session, patient, content="Quero marcar uma consulta", **extra):
    command = ReceiveMessageCommand(
        tenant_id=patient.tenant_id,
        clinic_id=patient.clinic_id,
        patient_id=patient.id,
        from_phone=patient.phone,
        content=content,
        **extra,
    )
    return container.receive_message.execute(session, command)


def test_start_rejects_unknown_channel():
    with pytest.raises(InvariantViolation):
        Conversation.start(
            conversation_id=new_id(),
            patient_id=new_id(),
            clinic_id=new_id(),
            tenant_id=new_id(),
            correlation_id="corr",
            channel="telegram",
        )


def test_bot_cannot_send_more_than_three_messages_in_a_row():
    conversation = start_conversation()
    for _ in range(3):
        bot_reply(conversation)

    with pytest.raises(InvariantViolation):
        bot_reply(conversation)

    conversation.receive_message(
        message_id=new_id(), from_phone="+5585987654321", content="oi", correlation_id="corr"
    )
    assert conversation.consecutive_bot_messages == 0
    bot_reply(conversation)


def test_agent_message_resets_bot_streak():
    conversation = start_conversation()
    bot_reply(conversation)
    bot_reply(conversation)
    conversation.send_message(
        message_id=new_id(),
        to_phone="+5585987654321",
        content="Aqui é a recepção",
        sent_by="agent",
        correlation_id="corr",
    )
    assert conversation.consecutive_bot_messages == 0


@pytest.mark.parametrize("confidence", [-0.1, 1.5])
def test_intent_confidence_must_be_a_probability(confidence):
    conversation = start_conversation()
    with pytest.raises(InvariantViolation):
        conversation.detect_intent(
            message_id=new_id(), intent="schedule", confidence=confidence, correlation_id="corr"
        )


def test_escalate_and_resolve_only_once():
    conversation = start_conversation()
    conversation.escalate(reason="manual_request", correlation_id="corr")
    with pytest.raises(InvariantViolation):
        conversation.escalate(reason="manual_request", correlation_id="corr")

    conversation.resolve(correlation_id="corr")
    with pytest.raises(InvariantViolation):
        conversation.resolve(correlation_id="corr")
    with pytest.raises(InvariantViolation):
        conversation.receive_message(
            message_id=new_id(), from_phone="+5585987654321", content="oi", correlation_id="corr"
        )


def test_escalation_reason_must_be_known():
    conversation = start_conversation()
    with pytest.raises(InvariantViolation):
        conversation.escalate(reason="bored", correlation_id="corr")


def test_first_message_starts_conversation(session, container, patient):
    result = receive(container, session, patient)

    row = session.get(ConversationView, uuid.UUID(result.conversation_id))
    assert row.status == "active"
    assert row.message_count == 1
    assert str(row.patient_id) == patient.id
    assert result.intent is None
    assert result.escalated is False

    again = receive(container, session, patient, content="Alguém aí?",
                    conversation_id=result.conversation_id)
    assert again.conversation_id == result.conversation_id
    session.refresh(row)
    assert row.message_count == 2


def test_detected_intent_is_recorded_on_the_message(session, gateway, enqueued, patient):
    detector = FixedIntentDetector("schedule", 0.92)
    container = build_container(
        backend="local", gateway=gateway, intent_detector=detector,
        enqueue=lambda *args: enqueued.append(args),
    )

    result = receive(container, session, patient)

    assert detector.calls == ["Quero marcar uma consulta"]
    assert result.intent == "schedule"
    assert result.escalated is False
    message = session.get(MessageView, uuid.UUID(result.message_id))
    assert message.intent == "schedule"
    assert float(message.intent_confidence) == pytest.approx(0.92)

    events = container.store.get_by_correlation_id(session, result.correlation_id)
    types = [event.event_type for event in events]
    assert MESSAGE_RECEIVED in types and INTENT_DETECTED in types
    received = next(event for event in events if event.event_type == MESSAGE_RECEIVED)
    detected = next(event for event in events if event.event_type == INTENT_DETECTED)
    assert detected.causation_id == received.event_id


def test_low_confidence_escalates_to_a_human(session, gateway, enqueued, patient):
    container = build_container(
        backend="local", gateway=gateway,
        intent_detector=FixedIntentDetector("billing", 0.2),
        enqueue=lambda *args: enqueued.append(args),
    )

    result = receive(container, session, patient, content="???")

    assert result.escalated is True
    row = session.get(ConversationView, uuid.UUID(result.conversation_id))
    assert row.is_escalated is True
    assert row.escalation_reason == "low_confidence"
    types = [
        event.event_type
        for event in container.store.load_stream(session, "Conversation", result.conversation_id)
    ]
    assert types[-1] == CONVERSATION_ESCALATED

    # Already escalated: a second low-confidence message does not escalate again.
    second = receive(container, session, patient, content="!!!",
                     conversation_id=result.conversation_id)
    assert second.escalated is False


def test_unknown_intent_is_not_recorded(session, container, patient):
    result = receive(container, session, patient, intent="unknown", confidence=0.9)

    types = [
        event.event_type
        for event in container.store.load_stream(session, "Conversation", result.conversation_id)
    ]
    assert INTENT_DETECTED not in types
    assert result.escalated is False


def test_send_message_delivers_and_logs(session, container, gateway, patient):
    received = receive(container, session, patient)

    result = container.send_message.execute(
        session,
        SendMessageCommand(
            tenant_id=patient.tenant_id,
            conversation_id=received.conversation_id,
            content="Temos horário amanhã às 9h.",
            sent_by="bot",
        ),
    )

    [delivered] = gateway.sent
    assert delivered.to == "+5585987654321"
    assert delivered.metadata["message_id"] == result.message_id
    assert result.delivery_id == "wamid-1"

    log = session.execute(select(MessageLog)).scalars().one()
    assert log.status == "sent"
    assert log.metadata_json["wa_message_id"] == "wamid-1"
    assert log.metadata_json["direction"] == "outbound"
    assert str(log.conversation_id) == received.conversation_id

    messages = container.conversations.list_messages(
        session, patient.tenant_id, received.conversation_id
    )
    assert [message.direction for message in messages] == ["incoming", "outgoing"]


def test_conversations_are_hidden_from_other_tenants(session, container, patient):
    received = receive(container, session, patient)

    with pytest.raises(AggregateNotFound):
        container.conversations.escalate(
            session, received.conversation_id, tenant_id=new_id()
        )
    with pytest.raises(AggregateNotFound):
        container.conversations.list_messages(session, new_id(), received.conversation_id)


def test_resolved_conversation_is_no_longer_open(session, container, patient):
    received = receive(container, session, patient)
    assert container.conversations.open_conversation_for(
        session, patient.tenant_id, patient.id
    ) is not None

    container.conversations.resolve(
        session, received.conversation_id, tenant_id=patient.tenant_id, resolved_by="recepcao"
    )

    assert container.conversations.open_conversation_for(
        session, patient.tenant_id, patient.id
    ) is None

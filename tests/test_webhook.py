import uuid

import pytest
from sqlalchemy import select

from healz.core.config import settings
from healz.models import ConversationView, MessageLog, PatientView

WEBHOOK = "/api/v1/wa/webhook"


@pytest.fixture()
def default_clinic(tenant, monkeypatch):
    monkeypatch.setattr(settings, "whatsapp_default_clinic_id", uuid.UUID(tenant["clinic_id"]))
    return tenant


def evolution_upsert(text="Oi, quero marcar consulta", message_id="3EB0AAA", from_me=False):
    return {
        "event": "messages.upsert",
        "instance": "healz",
        "data": {
            "key": {
                "remoteJid": "5585987654321@s.whatsapp.net",
                "fromMe": from_me,
                "id": message_id,
            },
            "pushName": "Maria",
            "message": {"conversation": text},
            "messageType": "conversation",
            "messageTimestamp": 1760000000,
        },
    }


def test_verification_handshake(client, monkeypatch):
    monkeypatch.setattr(settings, "webhook_verify_token", "segredo")

    ok = client.get(
        WEBHOOK,
        params={"hub.mode": "subscribe", "hub.verify_token": "segredo", "hub.challenge": "42"},
    )
    assert ok.status_code == 200
    assert ok.text == "42"

    denied = client.get(
        WEBHOOK,
        params={"hub.mode": "subscribe", "hub.verify_token": "errado", "hub.challenge": "42"},
    )
    assert denied.status_code == 403


def test_empty_payload_is_rejected(client):
    assert client.post(WEBHOOK, json={}).status_code == 400


def test_evolution_message_registers_patient_and_starts_conversation(
    client, default_clinic, session_factory
):
    response = client.post(WEBHOOK, json=evolution_upsert())

    assert response.status_code == 200
    body = response.json()
    assert body["event"] == "messages.upsert"
    [processed] = body["processed"]

    with session_factory() as db:
        patient = db.get(PatientView, uuid.UUID(processed["patient_id"]))
        assert patient.phone == "+5585987654321"
        assert patient.full_name == "Maria"
        assert str(patient.tenant_id) == default_clinic["tenant_id"]

        conversation = db.get(ConversationView, uuid.UUID(processed["conversation_id"]))
        assert conversation.message_count == 1

        log = db.execute(select(MessageLog)).scalars().one()
        assert log.status == "received"
        assert log.metadata_json["wa_message_id"] == "3EB0AAA"
        assert log.metadata_json["integration"] == "evolution_api"

    assert "+5585987654321" in client.interactions


def test_second_message_reuses_patient_and_conversation(client, default_clinic):
    first = client.post(WEBHOOK, json=evolution_upsert()).json()["processed"][0]
    second = client.post(
        WEBHOOK, json=evolution_upsert(text="Pode ser amanhã?", message_id="3EB0BBB")
    ).json()["processed"][0]

    assert second["patient_id"] == first["patient_id"]
    assert second["conversation_id"] == first["conversation_id"]


def test_own_messages_and_missing_clinic_are_ignored(client, tenant, default_clinic, monkeypatch):
    echoed = client.post(WEBHOOK, json=evolution_upsert(from_me=True))
    assert echoed.json()["processed"] == []

    monkeypatch.setattr(settings, "whatsapp_default_clinic_id", None)
    dropped = client.post(WEBHOOK, json=evolution_upsert())
    assert dropped.json()["processed"] == []


def test_graph_payload_with_button_reply(client, default_clinic):
    payload = {
        "entry": [
            {
                "changes": [
                    {
                        "value": {
                            "contacts": [{"wa_id": "5585911112222", "profile": {"name": "João"}}],
                            "messages": [
                                {
                                    "from": "5585911112222",
                                    "id": "wamid.XYZ",
                                    "timestamp": "1760000000",
                                    "type": "interactive",
                                    "interactive": {
                                        "type": "button_reply",
                                        "button_reply": {"id": "confirm", "title": "Confirmar"},
                                    },
                                }
                            ],
                        }
                    }
                ]
            }
        ]
    }

    response = client.post(WEBHOOK, json=payload)

    [processed] = response.json()["processed"]
    messages = client.get(
        f"/api/v1/conversations/{processed['conversation_id']}/messages",
        headers={"X-Tenant-ID": default_clinic["tenant_id"]},
    ).json()["messages"]
    assert [message["content"] for message in messages] == ["Confirmar"]


def test_status_update_changes_message_log(client, tenant, gateway, default_clinic, session_factory):
    processed = client.post(WEBHOOK, json=evolution_upsert()).json()["processed"][0]
    reply = client.post(
        f"/api/v1/conversations/{processed['conversation_id']}/replies",
        json={"content": "Olá Maria!"},
        headers={"X-Tenant-ID": tenant["tenant_id"]},
    )
    delivery_id = reply.json()["delivery_id"]

    response = client.post(
        WEBHOOK,
        json={
            "event": "MESSAGES_UPDATE",
            "data": [{"keyId": delivery_id, "status": "READ"}],
        },
    )

    assert response.status_code == 200
    with session_factory() as db:
        logs = db.execute(select(MessageLog)).scalars().all()
        outbound = next(log for log in logs if log.metadata_json.get("direction") == "outbound")
        assert outbound.status == "read"
        assert outbound.metadata_json["status_origin"] == "evolution_api"
        assert outbound.metadata_json["status_history"][0]["status"] == "READ"

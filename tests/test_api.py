import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from healz.models import AuditLog
from healz.patient.service import PatientService

from conftest import in_days, new_id, tenant_headers


def register_patient(client, tenant, phone="+5585987654321", **extra):
    response = client.post(
        "/api/v1/patients",
        json={"clinic_id": tenant["clinic_id"], "phone": phone, **extra},
        headers=tenant_headers(tenant),
    )
    assert response.status_code == 201, response.text
    return response.json()["patient"]


def schedule(client, tenant, patient, when=None, doctor_id="dra.ana", duration=30):
    return client.post(
        "/api/v1/appointments",
        json={
            "clinic_id": tenant["clinic_id"],
            "patient_id": patient["id"],
            "doctor_id": doctor_id,
            "scheduled_at": (when or in_days(5)).isoformat(),
            "duration": duration,
        },
        headers=tenant_headers(tenant),
    )


def receive(client, tenant, patient, content="Quero marcar consulta", **extra):
    response = client.post(
        "/api/v1/conversations/messages",
        json={
            "clinic_id": tenant["clinic_id"],
            "patient_id": patient["id"],
            "content": content,
            **extra,
        },
        headers=tenant_headers(tenant),
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_organization_and_clinic_onboarding(client):
    response = client.post(
        "/api/v1/organizations",
        json={"name": "Odonto Vida", "slug": "odonto-vida"},
        headers={"X-User-ID": "owner"},
    )
    assert response.status_code == 201
    organization = response.json()["organization"]
    assert organization["status"] == "active"

    headers = {"X-Tenant-ID": organization["id"], "X-User-ID": "owner"}
    clinic = client.post(
        f"/api/v1/organizations/{organization['id']}/clinics",
        json={"name": "Aldeota", "slug": "aldeota", "timezone": "America/Fortaleza"},
        headers=headers,
    )
    assert clinic.status_code == 201
    assert clinic.json()["clinic"]["timezone"] == "America/Fortaleza"

    duplicate = client.post(
        f"/api/v1/organizations/{organization['id']}/clinics",
        json={"name": "Aldeota 2", "slug": "aldeota"},
        headers=headers,
    )
    assert duplicate.status_code == 409

    taken = client.post("/api/v1/organizations", json={"name": "Outra", "slug": "odonto-vida"})
    assert taken.status_code == 409


def test_clinic_cannot_be_created_for_another_organization(client, tenant, other_tenant):
    response = client.post(
        f"/api/v1/organizations/{other_tenant['tenant_id']}/clinics",
        json={"name": "Invasora", "slug": "invasora"},
        headers=tenant_headers(tenant),
    )
    assert response.status_code == 404


def test_tenant_header_is_required_and_must_exist(client, tenant):
    assert client.get("/api/v1/patients").status_code == 422
    assert client.get("/api/v1/patients", headers={"X-Tenant-ID": "not-a-uuid"}).status_code == 422
    assert client.get("/api/v1/patients", headers={"X-Tenant-ID": new_id()}).status_code == 404


def test_member_management(client, tenant):
    base = f"/api/v1/clinics/{tenant['clinic_id']}/members"
    headers = tenant_headers(tenant, user_id="owner")

    added = client.post(base, json={"user_id": "dra.ana", "role": "doctor"}, headers=headers)
    assert added.status_code == 201
    assert added.json()["member"]["role"] == "doctor"
    assert client.post(base, json={"user_id": "dra.ana"}, headers=headers).status_code == 409

    promoted = client.patch(f"{base}/dra.ana", json={"role": "admin"}, headers=headers)
    assert promoted.json()["member"]["role"] == "admin"

    assert client.patch(f"{base}/dra.ana", json={}, headers=headers).status_code == 422

    removed = client.patch(f"{base}/dra.ana", json={"status": "inactive"}, headers=headers)
    assert removed.json()["member"]["status"] == "inactive"
    again = client.patch(f"{base}/dra.ana", json={"status": "inactive"}, headers=headers)
    assert again.status_code == 409
    assert client.patch(f"{base}/ghost", json={"role": "admin"}, headers=headers).status_code == 404


def test_patient_lifecycle(client, tenant):
    patient = register_patient(
        client, tenant, phone="(85) 98765-4321", full_name="Maria Silva", birth_date="1990-04-01"
    )
    assert patient["phone"] == "+85987654321"
    assert patient["birth_date"] == "1990-04-01"
    assert patient["version"] == 1

    duplicate = client.post(
        "/api/v1/patients",
        json={"clinic_id": tenant["clinic_id"], "phone": "85 98765 4321"},
        headers=tenant_headers(tenant),
    )
    assert duplicate.status_code == 409

    url = f"/api/v1/patients/{patient['id']}"
    updated = client.patch(url, json={"full_name": "Maria S. Silva"}, headers=tenant_headers(tenant))
    assert updated.json()["patient"]["full_name"] == "Maria S. Silva"
    assert updated.json()["patient"]["version"] == 2

    suspended = client.patch(
        url, json={"status": "suspended", "reason": "fraude"}, headers=tenant_headers(tenant)
    )
    assert suspended.json()["patient"]["status"] == "suspended"

    blocked = client.patch(url, json={"email": "m@example.com"}, headers=tenant_headers(tenant))
    assert blocked.status_code == 409

    reactivated = client.patch(url, json={"status": "active"}, headers=tenant_headers(tenant))
    assert reactivated.json()["patient"]["status"] == "active"

    assert client.patch(url, json={"status": "banned"}, headers=tenant_headers(tenant)).status_code == 422

    listed = client.get(
        "/api/v1/patients", params={"clinic_id": tenant["clinic_id"]}, headers=tenant_headers(tenant)
    ).json()["patients"]
    assert [row["full_name"] for row in listed] == ["Maria S. Silva"]


def test_invalid_phone_is_rejected(client, tenant):
    response = client.post(
        "/api/v1/patients",
        json={"clinic_id": tenant["clinic_id"], "phone": "123"},
        headers=tenant_headers(tenant),
    )
    assert response.status_code == 409


def test_racing_duplicate_phone_is_a_conflict(client, tenant, monkeypatch):
    register_patient(client, tenant)
    # Both requests passed the lookup before either was written.
    monkeypatch.setattr(
        PatientService, "find_by_phone", staticmethod(lambda session, tenant_id, phone: None)
    )

    response = client.post(
        "/api/v1/patients",
        json={"clinic_id": tenant["clinic_id"], "phone": "+5585987654321"},
        headers=tenant_headers(tenant),
    )

    assert response.status_code == 409
    listed = client.get("/api/v1/patients", headers=tenant_headers(tenant)).json()["patients"]
    assert len(listed) == 1


def test_tenants_cannot_see_each_other(client, tenant, other_tenant):
    patient = register_patient(client, tenant)

    foreign = tenant_headers(other_tenant)
    assert client.patch(
        f"/api/v1/patients/{patient['id']}", json={"full_name": "x"}, headers=foreign
    ).status_code == 404
    assert client.get("/api/v1/patients", headers=foreign).json()["patients"] == []
    assert client.get(f"/api/v1/journeys/{patient['id']}", headers=foreign).status_code == 404

    # Using a clinic of another organization is the same as an unknown clinic.
    response = client.post(
        "/api/v1/patients",
        json={"clinic_id": tenant["clinic_id"], "phone": "+5585900000000"},
        headers=foreign,
    )
    assert response.status_code == 404

    appointment = schedule(client, other_tenant, patient)
    assert appointment.status_code == 404


def test_appointment_lifecycle(client, tenant, enqueued):
    patient = register_patient(client, tenant)
    day = (datetime.now() + timedelta(days=5)).date()

    created = schedule(client, tenant, patient, when=None)
    assert created.status_code == 201
    appointment = created.json()["appointment"]
    assert appointment["status"] == "scheduled"
    assert "scheduled_at_local" in appointment
    assert {name for name, _, _ in enqueued} >= {"jobs.send_reminder_d1", "jobs.send_reminder_h2"}

    url = f"/api/v1/appointments/{appointment['id']}"
    headers = tenant_headers(tenant)

    confirmed = client.post(f"{url}/confirm", headers=headers)
    assert confirmed.json()["appointment"]["status"] == "confirmed"
    assert client.post(f"{url}/confirm", headers=headers).status_code == 409

    # Naive times are read in the clinic's timezone (America/Sao_Paulo, UTC-3).
    moved = client.post(
        f"{url}/reschedule",
        json={"new_scheduled_at": f"{day.isoformat()}T10:00:00", "reason": "agenda"},
        headers=headers,
    )
    assert moved.status_code == 200, moved.text
    body = moved.json()["appointment"]
    assert body["status"] == "scheduled"
    assert body["reschedule_count"] == 1
    assert body["scheduled_at"] == f"{day.isoformat()}T13:00:00+00:00"
    assert body["scheduled_at_local"] == f"{day.isoformat()}T10:00:00-03:00"

    completed = client.post(f"{url}/complete", json={"notes": "Retorno em 6 meses"}, headers=headers)
    assert completed.json()["appointment"]["status"] == "completed"
    assert completed.json()["appointment"]["notes"] == "Retorno em 6 meses"
    assert client.post(f"{url}/cancel", headers=headers).status_code == 409
    assert client.post(f"{url}/no-show", headers=headers).status_code == 409

    listed = client.get(
        "/api/v1/appointments", params={"clinic_id": tenant["clinic_id"]}, headers=headers
    ).json()
    assert [row["status"] for row in listed["appointments"]] == ["completed"]


def test_appointment_rules_map_to_http_errors(client, tenant):
    patient = register_patient(client, tenant)
    assert schedule(client, tenant, patient, when=in_days(5, hour=14), duration=60).status_code == 201

    clash = schedule(client, tenant, patient, when=in_days(5, hour=14) + timedelta(minutes=15))
    assert clash.status_code == 409
    assert clash.json()["detail"] == "Time slot not available"

    past = schedule(client, tenant, patient, when=in_days(-1), doctor_id="dr.bruno")
    assert past.status_code == 409

    too_long = schedule(client, tenant, patient, doctor_id="dr.bruno", duration=600)
    assert too_long.status_code == 409

    unknown = schedule(client, tenant, {"id": new_id()}, doctor_id="dr.bruno")
    assert unknown.status_code == 404

    missing = client.post(f"/api/v1/appointments/{new_id()}/confirm", headers=tenant_headers(tenant))
    assert missing.status_code == 404


def test_cancel_and_no_show(client, tenant):
    patient = register_patient(client, tenant)
    headers = tenant_headers(tenant)
    first = schedule(client, tenant, patient, when=in_days(5, hour=9)).json()["appointment"]
    second = schedule(client, tenant, patient, when=in_days(5, hour=11)).json()["appointment"]

    cancelled = client.post(
        f"/api/v1/appointments/{first['id']}/cancel", json={"reason": "viagem"}, headers=headers
    )
    assert cancelled.json()["appointment"]["status"] == "cancelled"

    missed = client.post(f"/api/v1/appointments/{second['id']}/no-show", headers=headers)
    assert missed.json()["appointment"]["status"] == "no_show"


def test_conversation_flow(client, tenant, gateway):
    patient = register_patient(client, tenant)
    headers = tenant_headers(tenant, user_id="recepcao")

    received = receive(client, tenant, patient, intent="schedule", confidence=0.9)
    assert received["intent"] == "schedule"
    assert received["escalated"] is False
    conversation_id = received["conversation_id"]

    reply = client.post(
        f"/api/v1/conversations/{conversation_id}/replies",
        json={"content": "Temos horário amanhã às 9h."},
        headers=headers,
    )
    assert reply.status_code == 201
    assert reply.json()["delivery_id"] == "wamid-1"
    assert gateway.sent[0].to == patient["phone"]

    messages = client.get(
        f"/api/v1/conversations/{conversation_id}/messages", headers=headers
    ).json()["messages"]
    assert [(m["direction"], m["intent"]) for m in messages] == [
        ("incoming", "schedule"),
        ("outgoing", None),
    ]

    escalated = client.post(
        f"/api/v1/conversations/{conversation_id}/escalate",
        json={"reason": "sensitive_topic", "escalated_to_user_id": "dra.ana"},
        headers=headers,
    )
    assert escalated.json()["conversation"]["is_escalated"] is True
    assert escalated.json()["conversation"]["escalated_to_user_id"] == "dra.ana"
    again = client.post(f"/api/v1/conversations/{conversation_id}/escalate", headers=headers)
    assert again.status_code == 409

    resolved = client.post(f"/api/v1/conversations/{conversation_id}/resolve", headers=headers)
    assert resolved.json()["conversation"]["status"] == "resolved"
    assert client.post(
        f"/api/v1/conversations/{conversation_id}/resolve", headers=headers
    ).status_code == 409


def test_low_confidence_message_is_escalated(client, tenant):
    patient = register_patient(client, tenant)

    received = receive(client, tenant, patient, content="hmm", intent="billing", confidence=0.1)

    assert received["escalated"] is True


def test_bot_reply_limit(client, tenant):
    patient = register_patient(client, tenant)
    conversation_id = receive(client, tenant, patient)["conversation_id"]
    url = f"/api/v1/conversations/{conversation_id}/replies"

    for _ in range(3):
        assert client.post(
            url, json={"content": "Posso ajudar?", "sent_by": "bot"}, headers=tenant_headers(tenant)
        ).status_code == 201
    blocked = client.post(
        url, json={"content": "Ainda aí?", "sent_by": "bot"}, headers=tenant_headers(tenant)
    )
    assert blocked.status_code == 409


def test_reply_outside_session_window_is_refused(client, tenant, gateway, monkeypatch):
    patient = register_patient(client, tenant)
    conversation_id = receive(client, tenant, patient)["conversation_id"]
    monkeypatch.setattr("healz.main.session_window_open", lambda phone, reference: False)

    response = client.post(
        f"/api/v1/conversations/{conversation_id}/replies",
        json={"content": "Olá de novo"},
        headers=tenant_headers(tenant),
    )

    assert response.status_code == 409
    assert gateway.sent == []


def test_reply_to_foreign_conversation_is_not_found(client, tenant, other_tenant, gateway, monkeypatch):
    patient = register_patient(client, tenant)
    conversation_id = receive(client, tenant, patient)["conversation_id"]
    monkeypatch.setattr("healz.main.session_window_open", lambda phone, reference: False)

    response = client.post(
        f"/api/v1/conversations/{conversation_id}/replies",
        json={"content": "Olá"},
        headers=tenant_headers(other_tenant),
    )

    assert response.status_code == 404
    assert gateway.sent == []


def test_journey_endpoint_follows_the_patient(client, tenant):
    patient = register_patient(client, tenant)
    headers = tenant_headers(tenant)

    journey = client.get(f"/api/v1/journeys/{patient['id']}", headers=headers).json()["journey"]
    assert journey["current_stage"] == "lead"

    receive(client, tenant, patient)
    schedule(client, tenant, patient)

    journey = client.get(f"/api/v1/journeys/{patient['id']}", headers=headers).json()["journey"]
    assert journey["current_stage"] == "scheduled"
    assert journey["milestones"] == ["first_message", "first_appointment"]
    assert journey["risk_level"] == "low"
    assert [entry["stage"] for entry in journey["stage_history"]] == ["lead", "engaged", "scheduled"]


def test_events_can_be_traced_by_correlation_id(client, tenant, other_tenant):
    patient = register_patient(client, tenant)
    received = receive(client, tenant, patient)

    trace = client.get(
        "/api/v1/events",
        params={"correlation_id": received["correlation_id"]},
        headers=tenant_headers(tenant),
    ).json()
    types = [event["event_type"] for event in trace["events"]]
    assert types[:2] == ["ConversationStarted", "MessageReceived"]
    assert "JourneyStageChanged" in types
    assert "JourneyMilestoneReached" in types

    hidden = client.get(
        "/api/v1/events",
        params={"correlation_id": received["correlation_id"]},
        headers=tenant_headers(other_tenant),
    ).json()
    assert hidden["events"] == []


def test_projection_rebuild_endpoint(client, tenant):
    register_patient(client, tenant)
    register_patient(client, tenant, phone="+5585911112222")
    headers = tenant_headers(tenant)

    response = client.post("/api/v1/projections/patient_view/rebuild", headers=headers)
    assert response.json() == {"projection": "patient_view", "events_applied": 2}
    assert len(client.get("/api/v1/patients", headers=headers).json()["patients"]) == 2

    assert client.post("/api/v1/projections/nope/rebuild", headers=headers).status_code == 404


def test_mutations_leave_an_audit_trail(client, tenant, session_factory):
    patient = register_patient(client, tenant)
    schedule(client, tenant, patient)

    with session_factory() as db:
        rows = db.execute(
            select(AuditLog).where(AuditLog.tenant_id == uuid.UUID(tenant["tenant_id"]))
        ).scalars().all()

    actions = {row.action: row for row in rows}
    assert {"patient.registered", "appointment.scheduled"} <= set(actions)
    assert actions["patient.registered"].actor == "recepcao"
    assert actions["patient.registered"].resource == f"patient:{patient['id']}"


@pytest.mark.parametrize("path", ["/api/v1/patients", "/api/v1/appointments"])
def test_list_endpoints_reject_foreign_clinic(client, tenant, other_tenant, path):
    response = client.get(
        path, params={"clinic_id": other_tenant["clinic_id"]}, headers=tenant_headers(tenant)
    )
    assert response.status_code == 404

from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy import select

from healz.carol.ports import ChatReply
from healz.clinic_settings.schemas import WEEKDAYS
from healz.models import AuditLog, ClinicInvite

from conftest import in_days, tenant_headers

SAO_PAULO = ZoneInfo("America/Sao_Paulo")

MORNINGS = {
    "weekly_schedule": [
        {"day": day, "is_open": True, "time_slots": [{"from": "08:00", "to": "12:00"}]}
        for day in WEEKDAYS
    ],
    "default_appointment_duration": 60,
    "minimum_advance_hours": 0,
    "max_future_days": 60,
}


class CannedModel:
    def __init__(self, text):
        self.text = text
        self.calls = 0

    def complete(self, messages, tools):
        self.calls += 1
        return ChatReply(content=self.text)


def put_settings(client, tenant, section, data):
    return client.put(
        f"/api/v1/clinics/{tenant['clinic_id']}/settings/{section}",
        json=data,
        headers=tenant_headers(tenant),
    )


def invite(client, tenant, email="dra.ana@example.com", role="doctor"):
    return client.post(
        f"/api/v1/clinics/{tenant['clinic_id']}/invites",
        json={"email": email, "role": role, "name": "Ana"},
        headers=tenant_headers(tenant, "admin"),
    )


def booking_day():
    return (datetime.now(SAO_PAULO) + timedelta(days=3)).date()


def test_signup_creates_organization_clinic_and_admin(client):
    response = client.post(
        "/api/v1/signup",
        json={
            "organization": {"name": "Odonto Vida", "slug": "odonto-vida"},
            "clinic": {
                "name": "Unidade Aldeota",
                "slug": "aldeota",
                "timezone": "America/Fortaleza",
            },
            "user_id": "owner-1",
        },
    )

    assert response.status_code == 201, response.text
    body = response.json()
    assert body["organization"]["slug"] == "odonto-vida"
    assert body["clinic"]["timezone"] == "America/Fortaleza"
    assert body["member"]["role"] == "admin"
    assert body["member"]["user_id"] == "owner-1"


def test_signup_with_taken_slug_is_a_conflict(client, tenant):
    response = client.post(
        "/api/v1/signup",
        json={
            "organization": {"name": "Outra Sorriso", "slug": "sorriso"},
            "clinic": {"name": "Sul", "slug": "sul"},
            "user_id": "owner-2",
        },
    )

    assert response.status_code == 409
    assert "already taken" in response.json()["detail"]


def test_invite_is_accepted_once(client, tenant, session_factory):
    created = invite(client, tenant)
    assert created.status_code == 201, created.text
    token = created.json()["token"]
    assert len(token) == 64
    assert created.json()["invite"]["accepted_at"] is None

    accepted = client.post(f"/api/v1/invites/{token}/accept", json={"user_id": "user-ana"})
    again = client.post(f"/api/v1/invites/{token}/accept", json={"user_id": "user-ana"})

    assert accepted.status_code == 200, accepted.text
    assert accepted.json()["member"]["role"] == "doctor"
    assert accepted.json()["member"]["status"] == "active"
    assert accepted.json()["invite"]["accepted_at"] is not None
    assert again.status_code == 409

    with session_factory() as db:
        actions = set(db.execute(select(AuditLog.action)).scalars())
    assert {"member.invited", "member.invite_accepted"} <= actions


def test_pending_invite_is_not_duplicated(client, tenant):
    assert invite(client, tenant).status_code == 201
    duplicate = invite(client, tenant, email="DRA.ANA@example.com")
    assert duplicate.status_code == 409


def test_expired_or_unknown_invites_are_refused(client, tenant, session_factory):
    token = invite(client, tenant).json()["token"]
    with session_factory() as db:
        row = db.execute(select(ClinicInvite).where(ClinicInvite.token == token)).scalar_one()
        row.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        db.commit()

    expired = client.post(f"/api/v1/invites/{token}/accept", json={"user_id": "user-ana"})
    unknown = client.post("/api/v1/invites/nope/accept", json={"user_id": "user-ana"})

    assert expired.status_code == 409
    assert "expired" in expired.json()["detail"]
    assert unknown.status_code == 404


def test_invite_to_foreign_clinic_is_not_found(client, tenant, other_tenant):
    response = client.post(
        f"/api/v1/clinics/{other_tenant['clinic_id']}/invites",
        json={"email": "x@example.com", "role": "receptionist"},
        headers=tenant_headers(tenant),
    )
    assert response.status_code == 404


def test_settings_sections_round_trip(client, tenant):
    empty = client.get(
        f"/api/v1/clinics/{tenant['clinic_id']}/settings/scheduling",
        headers=tenant_headers(tenant),
    )
    saved = put_settings(client, tenant, "scheduling", MORNINGS)
    fetched = client.get(
        f"/api/v1/clinics/{tenant['clinic_id']}/settings/scheduling",
        headers=tenant_headers(tenant),
    )

    assert empty.json()["data"] is None
    assert saved.status_code == 200, saved.text
    data = fetched.json()["data"]
    assert data["default_appointment_duration"] == 60
    assert data["weekly_schedule"][0]["time_slots"] == [{"from": "08:00", "to": "12:00"}]
    assert data["specific_blocks"] == []


@pytest.mark.parametrize(
    "section, data",
    [
        ("scheduling", {"default_appointment_duration": 0}),
        ("scheduling", {"weekly_schedule": [{"day": "funday"}]}),
        ("notifications", {"alert_channels": ["pigeon"]}),
        ("billing", {}),
    ],
)
def test_invalid_settings_are_unprocessable(client, tenant, section, data):
    assert put_settings(client, tenant, section, data).status_code == 422


def test_settings_of_other_tenant_are_hidden(client, tenant, other_tenant):
    response = client.get(
        f"/api/v1/clinics/{other_tenant['clinic_id']}/settings/general",
        headers=tenant_headers(tenant),
    )
    assert response.status_code == 404


def test_api_scheduling_follows_operating_hours(client, tenant):
    put_settings(client, tenant, "scheduling", MORNINGS)
    patient = client.post(
        "/api/v1/patients",
        json={"clinic_id": tenant["clinic_id"], "phone": "+5585987654321"},
        headers=tenant_headers(tenant),
    ).json()["patient"]

    def book(when):
        return client.post(
            "/api/v1/appointments",
            json={
                "clinic_id": tenant["clinic_id"],
                "patient_id": patient["id"],
                "doctor_id": "dra.ana",
                "scheduled_at": when.isoformat(),
                "duration": 60,
            },
            headers=tenant_headers(tenant),
        )

    # 15:00 UTC is noon in Sao Paulo, when the morning shift closes.
    late = book(in_days(3, hour=15))
    ok = book(datetime.combine(booking_day(), time(9)))

    assert late.status_code == 409
    assert "operating hours" in late.json()["detail"]
    assert ok.status_code == 201, ok.text
    assert ok.json()["appointment"]["scheduled_at_local"].endswith("09:00:00-03:00")

    availability = client.get(
        f"/api/v1/clinics/{tenant['clinic_id']}/availability",
        params={"date": booking_day().isoformat()},
        headers=tenant_headers(tenant),
    )
    assert availability.status_code == 200
    assert [slot["available"] for slot in availability.json()["slots"]] == [
        True,
        False,
        True,
        True,
    ]


def test_carol_draft_publish_and_chat(client, tenant, container):
    base = f"/api/v1/clinics/{tenant['clinic_id']}/carol"
    headers = tenant_headers(tenant)

    container.carol_chat.model = None
    assert client.get(f"{base}/config", headers=headers).json()["config"] is None
    assert client.post(f"{base}/config/publish", headers=headers).status_code == 409

    draft = client.put(
        f"{base}/config",
        json={"name": "Carol", "voice_tone": "informal", "greeting": "Oi! Aqui é a Carol."},
        headers=headers,
    )
    assert draft.status_code == 200, draft.text

    not_yet = client.post(f"{base}/chat", json={"message": "Oi"}, headers=headers)
    assert not_yet.json()["reply"] == "Carol ainda não foi configurada para esta clínica."

    unavailable = client.post(
        f"{base}/chat", json={"message": "Oi", "version": "draft"}, headers=headers
    )
    assert unavailable.status_code == 503

    container.carol_chat.model = CannedModel("Oi! Aqui é a Carol.")
    published = client.post(f"{base}/config/publish", headers=headers)
    chat = client.post(f"{base}/chat", json={"message": "Oi"}, headers=headers)

    assert published.json()["config"]["voice_tone"] == "informal"
    assert client.get(f"{base}/config", headers=headers).json()["config"]["name"] == "Carol"
    assert chat.status_code == 200, chat.text
    assert chat.json()["reply"] == "Oi! Aqui é a Carol."
    assert chat.json()["session_id"]
    assert chat.json()["tools_used"] is None


def test_carol_config_rejects_unknown_tone(client, tenant):
    response = client.put(
        f"/api/v1/clinics/{tenant['clinic_id']}/carol/config",
        json={"voice_tone": "sarcastic"},
        headers=tenant_headers(tenant),
    )
    assert response.status_code == 422

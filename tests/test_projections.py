from sqlalchemy import select

from healz.conversation.service import ReceiveMessageCommand
from healz.models import AppointmentView, ConversationView, MessageView, PatientJourneyView, PatientView

from conftest import in_days, new_id


def snapshot(session, model, *columns):
    rows = session.execute(select(model)).scalars().all()
    return sorted(
        tuple(str(getattr(row, column)) for column in columns) for row in rows
    )


def populate(session, container, tenant_id, phone):
    patient = container.patients.register(
        session, tenant_id=tenant_id, clinic_id=new_id(), phone=phone, full_name="Maria"
    )
    container.patients.update(session, patient.id, tenant_id=tenant_id, email="m@example.com")
    container.receive_message.execute(
        session,
        ReceiveMessageCommand(
            tenant_id=tenant_id,
            clinic_id=patient.clinic_id,
            patient_id=patient.id,
            from_phone=patient.phone,
            content="Oi",
            intent="schedule",
            confidence=0.9,
        ),
    )
    appointment = container.appointments.schedule(
        session,
        tenant_id=tenant_id,
        clinic_id=patient.clinic_id,
        patient_id=patient.id,
        doctor_id=f"doctor-{phone}",
        scheduled_at=in_days(2),
        duration=30,
    )
    container.appointments.confirm(session, appointment.id, tenant_id=tenant_id)
    return patient


VIEWS = [
    ("patient_view", PatientView, ("id", "phone", "full_name", "email", "status", "last_event_version")),
    ("conversation_view", ConversationView, ("id", "status", "message_count", "last_event_version")),
    ("appointment_view", AppointmentView, ("id", "status", "duration", "last_event_version")),
    ("patient_journey_view", PatientJourneyView, ("id", "current_stage", "risk_score", "milestones", "last_event_version")),
]


def test_rebuild_reproduces_every_view(session, container):
    populate(session, container, new_id(), "+5585911110000")
    before = {name: snapshot(session, model, *columns) for name, model, columns in VIEWS}
    messages_before = snapshot(session, MessageView, "id", "direction", "intent")

    for name, _, _ in VIEWS:
        applied = container.rebuilder.rebuild(session, container.projection(name))
        assert applied > 0
    session.expire_all()

    after = {name: snapshot(session, model, *columns) for name, model, columns in VIEWS}
    assert after == before
    assert snapshot(session, MessageView, "id", "direction", "intent") == messages_before


def test_rebuild_is_scoped_to_one_tenant(session, container):
    tenant_a, tenant_b = new_id(), new_id()
    patient_a = populate(session, container, tenant_a, "+5585911110000")
    patient_b = populate(session, container, tenant_b, "+5585922220000")

    for patient in (patient_a, patient_b):
        row = container.patients.find_by_phone(session, patient.tenant_id, patient.phone)
        row.full_name = "stale"
    session.flush()

    applied = container.rebuilder.rebuild(
        session, container.projection("patient_view"), tenant_id=tenant_a
    )
    session.expire_all()

    # PatientRegistered and PatientUpdated for tenant A only.
    assert applied == 2
    assert container.patients.find_by_phone(session, tenant_a, patient_a.phone).full_name == "Maria"
    assert container.patients.find_by_phone(session, tenant_b, patient_b.phone).full_name == "stale"


def test_events_of_other_types_are_not_replayed(session, container):
    populate(session, container, new_id(), "+5585911110000")

    applied = container.rebuilder.rebuild(session, container.projection("appointment_view"))

    # AppointmentScheduled and AppointmentConfirmed.
    assert applied == 2

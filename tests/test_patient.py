import pytest

from healz.event_sourcing import AggregateNotFound, InvariantViolation
from healz.patient.aggregate import (
    PATIENT_REGISTERED,
    PATIENT_UPDATED,
    Patient,
    normalize_phone,
)

from conftest import new_id


def register(**overrides):
    payload = {
        "patient_id": new_id(),
        "tenant_id": new_id(),
        "clinic_id": new_id(),
        "phone": "(85) 98765-4321",
        "full_name": "Maria Silva",
        "correlation_id": "corr",
    }
    payload.update(overrides)
    return Patient.register(**payload)


def test_normalize_phone_keeps_digits_with_plus():
    assert normalize_phone("+55 (85) 98765-4321") == "+5585987654321"
    assert normalize_phone("85987654321") == "+85987654321"


@pytest.mark.parametrize("raw", ["", None, "1234", "+1234567890123456"])
def test_normalize_phone_rejects_implausible_numbers(raw):
    with pytest.raises(InvariantViolation):
        normalize_phone(raw)


def test_register_raises_registered_event():
    patient = register()

    [event] = patient.pending_events()
    assert event.event_type == PATIENT_REGISTERED
    assert event.event_data["phone"] == "+85987654321"
    assert patient.status == "active"
    assert patient.version == 1


def test_update_without_changes_records_nothing():
    patient = register()
    patient.mark_committed()

    assert patient.update(correlation_id="corr", full_name="Maria Silva") is None
    assert patient.pending_events() == []

    event = patient.update(correlation_id="corr", full_name="Maria S. Silva", email=None)
    assert event.event_type == PATIENT_UPDATED
    assert event.event_data["updates"] == {"full_name": "Maria S. Silva"}


def test_suspended_patient_cannot_be_updated_until_reactivated():
    patient = register()
    patient.suspend(correlation_id="corr", reason="billing")

    with pytest.raises(InvariantViolation):
        patient.update(correlation_id="corr", email="maria@example.com")
    with pytest.raises(InvariantViolation):
        patient.suspend(correlation_id="corr")

    patient.reactivate(correlation_id="corr")
    assert patient.update(correlation_id="corr", email="maria@example.com") is not None


def test_status_preconditions():
    patient = register()
    with pytest.raises(InvariantViolation):
        patient.reactivate(correlation_id="corr")

    patient.deactivate(correlation_id="corr")
    with pytest.raises(InvariantViolation):
        patient.deactivate(correlation_id="corr")


def test_replay_restores_state():
    patient = register()
    patient.update(correlation_id="corr", email="maria@example.com")
    patient.deactivate(correlation_id="corr")

    restored = Patient.rehydrate(patient.pending_events())

    assert restored.email == "maria@example.com"
    assert restored.status == "inactive"
    assert restored.version == 3


def test_service_registers_and_projects_patient(session, container):
    tenant_id, clinic_id = new_id(), new_id()

    patient = container.patients.register(
        session, tenant_id=tenant_id, clinic_id=clinic_id, phone="+5585987654321",
        full_name="Maria Silva", birth_date="1990-04-01",
    )

    row = container.patients.find_by_phone(session, tenant_id, "5585987654321")
    assert str(row.id) == patient.id
    assert row.birth_date.isoformat() == "1990-04-01"
    assert row.last_event_version == 1


def test_service_rejects_duplicate_phone_per_tenant(session, container):
    tenant_id = new_id()
    container.patients.register(
        session, tenant_id=tenant_id, clinic_id=new_id(), phone="+5585987654321"
    )

    with pytest.raises(InvariantViolation):
        container.patients.register(
            session, tenant_id=tenant_id, clinic_id=new_id(), phone="55 85 98765-4321"
        )

    other = container.patients.register(
        session, tenant_id=new_id(), clinic_id=new_id(), phone="+5585987654321"
    )
    assert other.version == 1


def test_service_hides_patients_of_other_tenants(session, container):
    patient = container.patients.register(
        session, tenant_id=new_id(), clinic_id=new_id(), phone="+5585987654321"
    )

    with pytest.raises(AggregateNotFound):
        container.patients.update(
            session, patient.id, tenant_id=new_id(), full_name="Intruso"
        )


def test_status_changes_reach_the_view(session, container):
    tenant_id = new_id()
    patient = container.patients.register(
        session, tenant_id=tenant_id, clinic_id=new_id(), phone="+5585987654321"
    )

    container.patients.suspend(session, patient.id, tenant_id=tenant_id, reason="fraud")
    [row] = container.patients.list_patients(session, tenant_id)
    assert row.status == "suspended"
    assert row.last_event_version == 2

    container.patients.reactivate(session, patient.id, tenant_id=tenant_id)
    session.refresh(row)
    assert row.status == "active"

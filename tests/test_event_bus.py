import pytest
from sqlalchemy import text

from healz.event_sourcing import (
    CeleryEventPublisher,
    DomainEvent,
    EventBus,
    LocalEventPublisher,
)

from conftest import new_id


def make_event(event_type="PatientRegistered"):
    return DomainEvent.create(
        event_type=event_type,
        aggregate_type="Patient",
        aggregate_id=new_id(),
        aggregate_version=1,
        tenant_id=new_id(),
        correlation_id="corr",
        event_data={},
    )


def test_bus_calls_handlers_in_subscription_order(session):
    bus = EventBus()
    calls = []
    bus.subscribe("PatientRegistered", lambda db, event: calls.append("projection"))
    bus.subscribe("PatientRegistered", lambda db, event: calls.append("process_manager"))
    bus.subscribe("PatientUpdated", lambda db, event: calls.append("other"))

    LocalEventPublisher(bus).publish_many(session, [make_event()])

    assert calls == ["projection", "process_manager"]


def test_bus_reraises_handler_failures(session):
    bus = EventBus()
    calls = []

    def broken(db, event):
        raise RuntimeError("projection down")

    bus.subscribe("PatientRegistered", broken)
    bus.subscribe("PatientRegistered", lambda db, event: calls.append("after"))

    with pytest.raises(RuntimeError):
        bus.dispatch(session, make_event())
    assert calls == []


def test_celery_publisher_sends_only_after_commit(session_factory):
    sent = []
    publisher = CeleryEventPublisher(sent.append)
    event = make_event()

    with session_factory() as db:
        db.execute(text("SELECT 1"))
        publisher.publish_many(db, [event])
        assert sent == []
        db.commit()

    assert [payload["event_id"] for payload in sent] == [event.event_id]


def test_celery_publisher_drops_events_on_rollback(session_factory):
    sent = []
    publisher = CeleryEventPublisher(sent.append)

    with session_factory() as db:
        db.execute(text("SELECT 1"))
        publisher.publish_many(db, [make_event()])
        db.rollback()
        db.execute(text("SELECT 1"))
        publisher.publish_many(db, [make_event("PatientUpdated")])
        db.commit()

    assert [payload["event_type"] for payload in sent] == ["PatientUpdated"]

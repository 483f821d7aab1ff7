import pytest

from healz.event_sourcing import ConcurrencyError, DomainEvent, SqlAlchemyEventStore
from healz.event_sourcing.domain_event import new_correlation_id, propagate_or_generate

from conftest import new_id


def make_event(aggregate_id, version, *, tenant_id, event_type="PatientRegistered", **kwargs):
    return DomainEvent.create(
        event_type=event_type,
        aggregate_type=kwargs.pop("aggregate_type", "Patient"),
        aggregate_id=aggregate_id,
        aggregate_version=version,
        tenant_id=tenant_id,
        correlation_id=kwargs.pop("correlation_id", "corr-1"),
        event_data=kwargs.pop("event_data", {"patient_id": aggregate_id}),
        **kwargs,
    )


def test_append_and_load_stream_in_version_order(session):
    store = SqlAlchemyEventStore()
    aggregate_id, tenant_id = new_id(), new_id()
    store.append_many(
        session,
        [
            make_event(aggregate_id, 1, tenant_id=tenant_id),
            make_event(aggregate_id, 2, tenant_id=tenant_id, event_type="PatientUpdated"),
        ],
        expected_version=0,
    )

    stream = store.load_stream(session, "Patient", aggregate_id)

    assert [event.aggregate_version for event in stream] == [1, 2]
    assert [event.event_type for event in stream] == ["PatientRegistered", "PatientUpdated"]
    assert stream[0].tenant_id == tenant_id
    assert store.current_version(session, aggregate_id) == 2


def test_stale_expected_version_raises_concurrency_error(session):
    store = SqlAlchemyEventStore()
    aggregate_id, tenant_id = new_id(), new_id()
    store.append(session, make_event(aggregate_id, 1, tenant_id=tenant_id))

    with pytest.raises(ConcurrencyError) as excinfo:
        store.append_many(
            session, [make_event(aggregate_id, 1, tenant_id=tenant_id)], expected_version=0
        )

    assert excinfo.value.actual_version == 1
    assert store.current_version(session, aggregate_id) == 1


def test_batch_must_be_contiguous(session):
    store = SqlAlchemyEventStore()
    aggregate_id, tenant_id = new_id(), new_id()

    with pytest.raises(ValueError):
        store.append_many(
            session,
            [
                make_event(aggregate_id, 1, tenant_id=tenant_id),
                make_event(aggregate_id, 3, tenant_id=tenant_id),
            ],
        )


def test_queries_by_correlation_type_and_tenant(session):
    store = SqlAlchemyEventStore()
    tenant_a, tenant_b = new_id(), new_id()
    first, second = new_id(), new_id()
    store.append(session, make_event(first, 1, tenant_id=tenant_a, correlation_id="trace-a"))
    store.append(session, make_event(second, 1, tenant_id=tenant_b, correlation_id="trace-b"))
    store.append(
        session,
        make_event(
            first, 2, tenant_id=tenant_a, correlation_id="trace-a", event_type="PatientUpdated"
        ),
    )

    traced = store.get_by_correlation_id(session, "trace-a")
    assert [event.aggregate_version for event in traced] == [1, 2]

    registered = store.get_by_event_type(session, "PatientRegistered")
    assert {event.aggregate_id for event in registered} == {first, second}

    assert [event.aggregate_id for event in store.get_by_tenant(session, tenant_b)] == [second]


def test_has_caused_tracks_causation_per_stream(session):
    store = SqlAlchemyEventStore()
    journey_id, tenant_id = new_id(), new_id()
    store.append(
        session,
        make_event(
            journey_id,
            1,
            tenant_id=tenant_id,
            aggregate_type="PatientJourney",
            event_type="JourneyStarted",
            causation_id="cause-1",
        ),
    )

    assert store.has_caused(session, "PatientJourney", journey_id, "cause-1")
    assert not store.has_caused(session, "PatientJourney", journey_id, "cause-2")
    assert not store.has_caused(session, "PatientJourney", new_id(), "cause-1")


def test_stream_all_pages_in_global_order_with_filters(session):
    store = SqlAlchemyEventStore()
    tenant_a, tenant_b = new_id(), new_id()
    ids = [new_id() for _ in range(5)]
    for index, aggregate_id in enumerate(ids):
        store.append(
            session,
            make_event(aggregate_id, 1, tenant_id=tenant_a if index % 2 == 0 else tenant_b),
        )

    everything = list(store.stream_all(session, batch_size=2))
    assert [event.aggregate_id for event in everything] == ids

    scoped = list(store.stream_all(session, tenant_id=tenant_a, batch_size=2))
    assert [event.aggregate_id for event in scoped] == ids[::2]

    assert list(store.stream_all(session, event_types=["PatientUpdated"])) == []


def test_event_round_trips_through_json():
    event = make_event(new_id(), 1, tenant_id=new_id(), causation_id="cause")

    restored = DomainEvent.from_dict(event.to_dict())

    assert restored == event


def test_correlation_ids_propagate_or_get_prefixed():
    assert propagate_or_generate("existing", "ignored") == "existing"
    assert propagate_or_generate(None, "register-patient").startswith("register-patient-")
    assert new_correlation_id() != new_correlation_id()


def test_unique_version_constraint_catches_racing_writer(session, monkeypatch):
    store = SqlAlchemyEventStore()
    aggregate_id, tenant_id = new_id(), new_id()
    store.append(session, make_event(aggregate_id, 1, tenant_id=tenant_id))
    # The second writer read the stream before the first one committed.
    monkeypatch.setattr(store, "current_version", lambda session, aggregate_id: 0)

    with pytest.raises(ConcurrencyError):
        store.append(session, make_event(aggregate_id, 1, tenant_id=tenant_id))

    monkeypatch.undo()
    assert len(store.load_stream(session, "Patient", aggregate_id)) == 1

"""Load and save aggregates through the event store."""

from __future__ import annotations

from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from healz.event_sourcing.aggregate import AggregateRoot
from healz.event_sourcing.domain_event import DomainEvent
from healz.event_sourcing.errors import AggregateNotFound
from healz.event_sourcing.event_bus import EventPublisher
from healz.event_sourcing.event_store import SqlAlchemyEventStore

AggregateT = TypeVar("AggregateT", bound=AggregateRoot)


class AggregateRepository(Generic[AggregateT]):
    def __init__(
        self,
        aggregate_cls: type[AggregateT],
        store: SqlAlchemyEventStore,
        publisher: EventPublisher,
    ) -> None:
        self.aggregate_cls = aggregate_cls
        self.store = store
        self.publisher = publisher

    def find(self, session: Session, aggregate_id: str) -> AggregateT | None:
        events = self.store.load_stream(
            session, self.aggregate_cls.aggregate_type, str(aggregate_id)
        )
        if not events:
            return None
        return self.aggregate_cls.rehydrate(events)

    def load(self, session: Session, aggregate_id: str) -> AggregateT:
        aggregate = self.find(session, aggregate_id)
        if aggregate is None:
            raise AggregateNotFound(self.aggregate_cls.aggregate_type, str(aggregate_id))
        return aggregate

    def save(self, session: Session, aggregate: AggregateT) -> list[DomainEvent]:
        """Append pending events and publish them; returns what was saved."""

        events = aggregate.pending_events()
        if not events:
            return []
        self.store.append_many(
            session, events, expected_version=aggregate.expected_version
        )
        aggregate.mark_committed()
        self.publisher.publish_many(session, events)
        return events

"""Event-sourcing primitives: events, aggregates, store, bus and projections."""

from healz.event_sourcing.aggregate import AggregateRoot, applies
from healz.event_sourcing.domain_event import (
    DomainEvent,
    new_correlation_id,
    propagate_or_generate,
)
from healz.event_sourcing.errors import (
    AggregateNotFound,
    ConcurrencyError,
    DomainError,
    InvalidStageTransition,
    InvariantViolation,
)
from healz.event_sourcing.event_bus import (
    CeleryEventPublisher,
    EventBus,
    EventPublisher,
    LocalEventPublisher,
)
from healz.event_sourcing.event_store import SqlAlchemyEventStore
from healz.event_sourcing.projection import Projection, ProjectionRebuilder, handles
from healz.event_sourcing.repository import AggregateRepository

__all__ = [
    "AggregateNotFound",
    "AggregateRepository",
    "AggregateRoot",
    "CeleryEventPublisher",
    "ConcurrencyError",
    "DomainError",
    "DomainEvent",
    "EventBus",
    "EventPublisher",
    "InvalidStageTransition",
    "InvariantViolation",
    "LocalEventPublisher",
    "Projection",
    "ProjectionRebuilder",
    "SqlAlchemyEventStore",
    "applies",
    "handles",
    "new_correlation_id",
    "propagate_or_generate",
]

"""Base class for event-sourced aggregates."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Any, ClassVar, TypeVar

from healz.event_sourcing.domain_event import DomainEvent
from healz.event_sourcing.errors import AggregateNotFound, ConcurrencyError

AggregateT = TypeVar("AggregateT", bound="AggregateRoot")

_Applier = Callable[[Any, DomainEvent], None]


def applies(event_type: str) -> Callable[[_Applier], _Applier]:
    """Mark a method as the state transition for ``event_type``."""

    def decorator(func: _Applier) -> _Applier:
        func.__applies_event__ = event_type  # type: ignore[attr-defined]
        return func

    return decorator


class AggregateRoot:
    """State derived by replaying an ordered stream of domain events.

    Commands validate against current state and call :meth:`_raise_event`,
    which applies the new event immediately and queues it until the
    repository persists it. Replaying the same stream through
    :meth:`load_from_history` always yields the same state, so appliers
    must only read from the event payload.
    """

    aggregate_type: ClassVar[str] = "Aggregate"
    _appliers: ClassVar[dict[str, str]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        appliers: dict[str, str] = {}
        for base in reversed(cls.__mro__[1:]):
            appliers.update(getattr(base, "_appliers", {}))
        for name, member in vars(cls).items():
            event_type = getattr(member, "__applies_event__", None)
            if event_type:
                appliers[event_type] = name
        cls._appliers = appliers

    def __init__(self) -> None:
        self.id: str | None = None
        self.tenant_id: str | None = None
        self.clinic_id: str | None = None
        self.version = 0
        self._pending: list[DomainEvent] = []

    @classmethod
    def rehydrate(cls: type[AggregateT], events: Iterable[DomainEvent]) -> AggregateT:
        """Rebuild an aggregate from its persisted history."""

        history = list(events)
        if not history:
            raise AggregateNotFound(cls.aggregate_type, "<empty stream>")
        aggregate = cls()
        aggregate.load_from_history(history)
        return aggregate

    def load_from_history(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            if event.aggregate_version != self.version + 1:
                raise ConcurrencyError(
                    event.aggregate_id,
                    expected_version=self.version + 1,
                    actual_version=event.aggregate_version,
                    message=(
                        f"Stream {event.aggregate_id} has a gap: expected version "
                        f"{self.version + 1}, found {event.aggregate_version}"
                    ),
                )
            self._apply(event)
            self.version = event.aggregate_version

    def _apply(self, event: DomainEvent) -> None:
        method_name = self._appliers.get(event.event_type)
        if method_name is None:
            # Unknown types come from newer writers; skip them on replay.
            return
        getattr(self, method_name)(event)

    def _raise_event(
        self,
        event_type: str,
        data: dict[str, Any],
        *,
        correlation_id: str,
        causation_id: str | None = None,
        user_id: str | None = None,
        aggregate_id: str | None = None,
        tenant_id: str | None = None,
        clinic_id: str | None = None,
    ) -> DomainEvent:
        target_id = aggregate_id or self.id
        target_tenant = tenant_id or self.tenant_id
        if not target_id or not target_tenant:
            raise ValueError("Aggregate identity is not initialised")

        event = DomainEvent.create(
            event_type=event_type,
            aggregate_type=self.aggregate_type,
            aggregate_id=target_id,
            aggregate_version=self.version + 1,
            tenant_id=target_tenant,
            clinic_id=clinic_id or self.clinic_id,
            correlation_id=correlation_id,
            causation_id=causation_id,
            user_id=user_id,
            event_data=data,
        )
        self._apply(event)
        self._pending.append(event)
        self.version = event.aggregate_version
        return event

    def pending_events(self) -> list[DomainEvent]:
        return list(self._pending)

    def mark_committed(self) -> None:
        self._pending.clear()

    @property
    def expected_version(self) -> int:
        """Version of the stream before the pending events were raised."""

        return self.version - len(self._pending)

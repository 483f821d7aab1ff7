"""Read-model projections and their rebuild from the event store."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from typing import Any, ClassVar

from sqlalchemy import delete
from sqlalchemy.orm import Session

from healz.core.clock import ensure_utc
from healz.event_sourcing.domain_event import DomainEvent
from healz.event_sourcing.event_bus import EventBus, EventHandler
from healz.event_sourcing.event_store import SqlAlchemyEventStore

logger = logging.getLogger(__name__)


def handles(event_type: str) -> Callable[[Callable[..., None]], Callable[..., None]]:
    """Mark a projection method as the handler for ``event_type``."""

    def decorator(func: Callable[..., None]) -> Callable[..., None]:
        func.__handles_event__ = event_type  # type: ignore[attr-defined]
        return func

    return decorator


class Projection:
    """Base class for projections that own one or more view tables.

    Handlers must be idempotent: view rows remember the last aggregate
    version applied, and a redelivered or replayed event at or below that
    version is ignored.
    """

    name: ClassVar[str] = "projection"
    tables: ClassVar[tuple[Any, ...]] = ()
    _handler_names: ClassVar[dict[str, str]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        names: dict[str, str] = {}
        for name, member in vars(cls).items():
            event_type = getattr(member, "__handles_event__", None)
            if event_type:
                names[event_type] = name
        cls._handler_names = names

    def handlers(self) -> dict[str, EventHandler]:
        return {
            event_type: getattr(self, name)
            for event_type, name in self._handler_names.items()
        }

    @property
    def handled_events(self) -> dict[str, str]:
        """Map of event type to the name of the method that applies it."""

        return dict(self._handler_names)

    @property
    def event_types(self) -> list[str]:
        return list(self._handler_names)

    def register(self, bus: EventBus) -> None:
        bus.subscribe_all(self.handlers())

    def apply(self, session: Session, event: DomainEvent) -> None:
        name = self._handler_names.get(event.event_type)
        if name is not None:
            getattr(self, name)(session, event)

    def reset(self, session: Session, tenant_id: str | None = None) -> None:
        for table in self.tables:
            stmt = delete(table)
            if tenant_id is not None:
                stmt = stmt.where(table.tenant_id == uuid.UUID(str(tenant_id)))
            session.execute(stmt)

    @staticmethod
    def is_stale(row: Any, event: DomainEvent) -> bool:
        return row is not None and event.aggregate_version <= row.last_event_version

    def current_row(self, session: Session, model: Any, event: DomainEvent) -> Any:
        """Return the view row for the event's aggregate unless it already saw the event."""

        row = session.get(model, uuid.UUID(event.aggregate_id))
        if row is None or self.is_stale(row, event):
            return None
        return row

    @staticmethod
    def touch(session: Session, row: Any, event: DomainEvent) -> None:
        row.last_event_version = event.aggregate_version
        row.updated_at = ensure_utc(event.created_at)
        # Handlers later in the same dispatch query these tables.
        session.flush()


class ProjectionRebuilder:
    """Drop a projection's rows and replay matching history into it."""

    def __init__(self, store: SqlAlchemyEventStore) -> None:
        self.store = store

    def rebuild(
        self,
        session: Session,
        projection: Projection,
        tenant_id: str | None = None,
    ) -> int:
        projection.reset(session, tenant_id)
        session.flush()

        applied = 0
        for event in self.store.stream_all(
            session, event_types=projection.event_types, tenant_id=tenant_id
        ):
            projection.apply(session, event)
            applied += 1
        session.flush()

        logger.info(
            "projection rebuilt",
            extra={
                "projection": projection.name,
                "tenant_scope": tenant_id,
                "events_applied": applied,
            },
        )
        return applied

"""Append-only event store on top of SQLAlchemy."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Iterator, Sequence

from sqlalchemy import exists, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from healz.core.clock import ensure_utc
from healz.event_sourcing.domain_event import DomainEvent
from healz.event_sourcing.errors import ConcurrencyError
from healz.event_sourcing.metrics import CONCURRENCY_CONFLICTS, EVENTS_APPENDED
from healz.models import StoredEvent

logger = logging.getLogger(__name__)


def _as_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


class SqlAlchemyEventStore:
    """Persist and query domain events in the ``events`` table.

    The store works inside the caller's session and never commits. Writes
    use optimistic concurrency: a batch is only accepted when the stream is
    still at the version the writer loaded, and the unique
    ``(aggregate_id, aggregate_version)`` constraint catches writers that
    race past that check.
    """

    def append(self, session: Session, event: DomainEvent) -> None:
        self.append_many(session, [event])

    def append_many(
        self,
        session: Session,
        events: Sequence[DomainEvent],
        expected_version: int | None = None,
    ) -> None:
        batch = list(events)
        if not batch:
            return

        first = batch[0]
        for offset, event in enumerate(batch):
            if event.aggregate_id != first.aggregate_id:
                raise ValueError("A batch must target a single aggregate")
            if event.aggregate_version != first.aggregate_version + offset:
                raise ValueError("Event versions in a batch must be contiguous")

        expected = (
            first.aggregate_version - 1 if expected_version is None else expected_version
        )
        if expected != first.aggregate_version - 1:
            raise ValueError(
                f"First event version {first.aggregate_version} does not follow "
                f"expected version {expected}"
            )

        actual = self.current_version(session, first.aggregate_id)
        if actual != expected:
            CONCURRENCY_CONFLICTS.labels(aggregate_type=first.aggregate_type).inc()
            logger.warning(
                "concurrency conflict",
                extra={
                    "aggregate_type": first.aggregate_type,
                    "aggregate_id": first.aggregate_id,
                    "expected_version": expected,
                    "actual_version": actual,
                },
            )
            raise ConcurrencyError(
                first.aggregate_id, expected_version=expected, actual_version=actual
            )

        try:
            with session.begin_nested():
                session.add_all([self._to_row(event) for event in batch])
        except IntegrityError as exc:
            CONCURRENCY_CONFLICTS.labels(aggregate_type=first.aggregate_type).inc()
            logger.warning(
                "concurrent append rejected by unique constraint",
                extra={
                    "aggregate_type": first.aggregate_type,
                    "aggregate_id": first.aggregate_id,
                    "expected_version": expected,
                },
            )
            raise ConcurrencyError(
                first.aggregate_id,
                expected_version=expected,
                message=f"Concurrent append to aggregate {first.aggregate_id}",
            ) from exc

        EVENTS_APPENDED.labels(aggregate_type=first.aggregate_type).inc(len(batch))
        logger.info(
            "events appended",
            extra={
                "aggregate_type": first.aggregate_type,
                "aggregate_id": first.aggregate_id,
                "from_version": first.aggregate_version,
                "to_version": batch[-1].aggregate_version,
                "event_types": [event.event_type for event in batch],
            },
        )

    def current_version(self, session: Session, aggregate_id: str) -> int:
        stmt = select(func.max(StoredEvent.aggregate_version)).where(
            StoredEvent.aggregate_id == _as_uuid(aggregate_id)
        )
        return int(session.execute(stmt).scalar() or 0)

    def load_stream(
        self, session: Session, aggregate_type: str, aggregate_id: str
    ) -> list[DomainEvent]:
        stmt = (
            select(StoredEvent)
            .where(
                StoredEvent.aggregate_type == aggregate_type,
                StoredEvent.aggregate_id == _as_uuid(aggregate_id),
            )
            .order_by(StoredEvent.aggregate_version)
        )
        return [self._to_event(row) for row in session.execute(stmt).scalars()]

    def first_event(
        self, session: Session, aggregate_type: str, aggregate_id: str
    ) -> DomainEvent | None:
        stmt = (
            select(StoredEvent)
            .where(
                StoredEvent.aggregate_type == aggregate_type,
                StoredEvent.aggregate_id == _as_uuid(aggregate_id),
            )
            .order_by(StoredEvent.aggregate_version)
            .limit(1)
        )
        row = session.execute(stmt).scalars().first()
        return self._to_event(row) if row is not None else None

    def get_caused_by(
        self,
        session: Session,
        causation_id: str,
        *,
        event_type: str | None = None,
    ) -> list[DomainEvent]:
        """Return the events raised in reaction to ``causation_id``, oldest first."""

        stmt = (
            select(StoredEvent)
            .where(StoredEvent.causation_id == causation_id)
            .order_by(StoredEvent.id)
        )
        if event_type is not None:
            stmt = stmt.where(StoredEvent.event_type == event_type)
        return [self._to_event(row) for row in session.execute(stmt).scalars()]

    def get_by_correlation_id(
        self, session: Session, correlation_id: str
    ) -> list[DomainEvent]:
        stmt = (
            select(StoredEvent)
            .where(StoredEvent.correlation_id == correlation_id)
            .order_by(StoredEvent.id)
        )
        return [self._to_event(row) for row in session.execute(stmt).scalars()]

    def get_by_event_type(
        self,
        session: Session,
        event_type: str,
        *,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[DomainEvent]:
        stmt = (
            select(StoredEvent)
            .where(StoredEvent.event_type == event_type)
            .order_by(StoredEvent.id.desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        if offset:
            stmt = stmt.offset(offset)
        return [self._to_event(row) for row in session.execute(stmt).scalars()]

    def get_by_tenant(
        self,
        session: Session,
        tenant_id: str,
        *,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[DomainEvent]:
        stmt = (
            select(StoredEvent)
            .where(StoredEvent.tenant_id == _as_uuid(tenant_id))
            .order_by(StoredEvent.id.desc())
        )
        if limit:
            stmt = stmt.limit(limit)
        if offset:
            stmt = stmt.offset(offset)
        return [self._to_event(row) for row in session.execute(stmt).scalars()]

    def has_caused(
        self,
        session: Session,
        aggregate_type: str,
        aggregate_id: str,
        causation_id: str,
    ) -> bool:
        """Return whether the stream already reacted to ``causation_id``."""

        stmt = select(
            exists().where(
                StoredEvent.aggregate_type == aggregate_type,
                StoredEvent.aggregate_id == _as_uuid(aggregate_id),
                StoredEvent.causation_id == causation_id,
            )
        )
        return bool(session.execute(stmt).scalar())

    def stream_all(
        self,
        session: Session,
        *,
        event_types: Iterable[str] | None = None,
        tenant_id: str | None = None,
        batch_size: int = 500,
    ) -> Iterator[DomainEvent]:
        """Yield events in global order, paging by primary key."""

        types = list(event_types) if event_types is not None else None
        last_id = 0
        while True:
            stmt = (
                select(StoredEvent)
                .where(StoredEvent.id > last_id)
                .order_by(StoredEvent.id)
                .limit(batch_size)
            )
            if types is not None:
                stmt = stmt.where(StoredEvent.event_type.in_(types))
            if tenant_id is not None:
                stmt = stmt.where(StoredEvent.tenant_id == _as_uuid(tenant_id))
            rows = session.execute(stmt).scalars().all()
            if not rows:
                return
            for row in rows:
                yield self._to_event(row)
            last_id = rows[-1].id

    @staticmethod
    def _to_row(event: DomainEvent) -> StoredEvent:
        return StoredEvent(
            event_id=_as_uuid(event.event_id),
            event_type=event.event_type,
            aggregate_type=event.aggregate_type,
            aggregate_id=_as_uuid(event.aggregate_id),
            aggregate_version=event.aggregate_version,
            tenant_id=_as_uuid(event.tenant_id),
            clinic_id=_as_uuid(event.clinic_id) if event.clinic_id else None,
            correlation_id=event.correlation_id,
            causation_id=event.causation_id,
            user_id=event.user_id,
            created_at=event.created_at,
            event_data=event.event_data,
            metadata_json=event.metadata or {},
        )

    @staticmethod
    def _to_event(row: StoredEvent) -> DomainEvent:
        return DomainEvent(
            event_id=str(row.event_id),
            event_type=row.event_type,
            aggregate_type=row.aggregate_type,
            aggregate_id=str(row.aggregate_id),
            aggregate_version=row.aggregate_version,
            tenant_id=str(row.tenant_id),
            clinic_id=str(row.clinic_id) if row.clinic_id else None,
            correlation_id=row.correlation_id,
            causation_id=row.causation_id,
            user_id=row.user_id,
            created_at=ensure_utc(row.created_at),
            event_data=dict(row.event_data or {}),
            metadata=dict(row.metadata_json or {}),
        )

"""In-process event bus and the publishers that feed it."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Mapping, Sequence
from typing import Any, Protocol

from sqlalchemy import event as sa_event
from sqlalchemy.orm import Session

from healz.event_sourcing.domain_event import DomainEvent
from healz.event_sourcing.metrics import DISPATCH_FAILURES

logger = logging.getLogger(__name__)

EventHandler = Callable[[Session, DomainEvent], None]

_OUTBOX_KEY = "healz_outbox"
_OUTBOX_HOOKED_KEY = "healz_outbox_hooked"


class EventBus:
    """Route events to subscribed handlers in subscription order."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    def subscribe_all(self, handlers: Mapping[str, EventHandler]) -> None:
        for event_type, handler in handlers.items():
            self.subscribe(event_type, handler)

    def handlers_for(self, event_type: str) -> list[EventHandler]:
        return list(self._handlers.get(event_type, []))

    def dispatch(self, session: Session, event: DomainEvent) -> None:
        for handler in self._handlers.get(event.event_type, []):
            try:
                handler(session, event)
            except Exception:
                DISPATCH_FAILURES.labels(event_type=event.event_type).inc()
                logger.exception(
                    "event handler failed",
                    extra={
                        "event_id": event.event_id,
                        "event_type": event.event_type,
                        "aggregate_id": event.aggregate_id,
                        "handler": getattr(handler, "__qualname__", repr(handler)),
                    },
                )
                raise


class EventPublisher(Protocol):
    def publish_many(self, session: Session, events: Sequence[DomainEvent]) -> None:
        ...


class LocalEventPublisher:
    """Dispatch events synchronously inside the caller's transaction.

    Events raised by handlers are dispatched depth-first through the same
    bus before control returns to the original publisher.
    """

    def __init__(self, bus: EventBus) -> None:
        self.bus = bus

    def publish_many(self, session: Session, events: Sequence[DomainEvent]) -> None:
        for event in events:
            self.bus.dispatch(session, event)


class CeleryEventPublisher:
    """Hand events to the Celery worker once the writing transaction commits.

    ``send`` receives the JSON form of one event. Nothing is sent when the
    transaction rolls back.
    """

    def __init__(self, send: Callable[[dict[str, Any]], Any]) -> None:
        self._send = send

    def publish_many(self, session: Session, events: Sequence[DomainEvent]) -> None:
        if not events:
            return
        outbox = session.info.setdefault(_OUTBOX_KEY, [])
        outbox.extend(event.to_dict() for event in events)
        if not session.info.get(_OUTBOX_HOOKED_KEY):
            sa_event.listen(session, "after_commit", self._flush)
            sa_event.listen(session, "after_rollback", self._discard)
            session.info[_OUTBOX_HOOKED_KEY] = True

    def _flush(self, session: Session) -> None:
        payloads = session.info.pop(_OUTBOX_KEY, [])
        for payload in payloads:
            self._send(payload)
        if payloads:
            logger.debug("enqueued %s events for dispatch", len(payloads))

    def _discard(self, session: Session) -> None:
        dropped = session.info.pop(_OUTBOX_KEY, [])
        if dropped:
            logger.warning(
                "discarded events from rolled back transaction",
                extra={"event_ids": [payload["event_id"] for payload in dropped]},
            )

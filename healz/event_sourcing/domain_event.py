"""Domain event envelope and correlation helpers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from healz.core.clock import parse_iso, utcnow


def new_correlation_id(prefix: str | None = None) -> str:
    """Return a fresh correlation identifier, optionally prefixed."""

    value = str(uuid.uuid4())
    return f"{prefix}-{value}" if prefix else value


def propagate_or_generate(existing: str | None, prefix: str | None = None) -> str:
    """Keep an inbound correlation id or mint a new one."""

    return existing or new_correlation_id(prefix)


@dataclass(frozen=True)
class DomainEvent:
    """Immutable record of something that happened to an aggregate."""

    event_id: str
    event_type: str
    aggregate_type: str
    aggregate_id: str
    aggregate_version: int
    tenant_id: str
    correlation_id: str
    created_at: datetime
    event_data: dict[str, Any]
    clinic_id: str | None = None
    causation_id: str | None = None
    user_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        *,
        event_type: str,
        aggregate_type: str,
        aggregate_id: str,
        aggregate_version: int,
        tenant_id: str,
        correlation_id: str,
        event_data: dict[str, Any],
        clinic_id: str | None = None,
        causation_id: str | None = None,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "DomainEvent":
        if aggregate_version < 1:
            raise ValueError("aggregate_version starts at 1")
        if not correlation_id:
            raise ValueError("correlation_id is required")
        return cls(
            event_id=str(uuid.uuid4()),
            event_type=event_type,
            aggregate_type=aggregate_type,
            aggregate_id=str(aggregate_id),
            aggregate_version=aggregate_version,
            tenant_id=str(tenant_id),
            clinic_id=str(clinic_id) if clinic_id else None,
            correlation_id=correlation_id,
            causation_id=causation_id,
            user_id=user_id,
            created_at=utcnow(),
            event_data=event_data,
            metadata=metadata or {},
        )

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-friendly representation of the event."""

        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "aggregate_type": self.aggregate_type,
            "aggregate_id": self.aggregate_id,
            "aggregate_version": self.aggregate_version,
            "tenant_id": self.tenant_id,
            "clinic_id": self.clinic_id,
            "correlation_id": self.correlation_id,
            "causation_id": self.causation_id,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "event_data": self.event_data,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "DomainEvent":
        created_at = payload["created_at"]
        if isinstance(created_at, str):
            created_at = parse_iso(created_at)
        return cls(
            event_id=payload["event_id"],
            event_type=payload["event_type"],
            aggregate_type=payload["aggregate_type"],
            aggregate_id=payload["aggregate_id"],
            aggregate_version=int(payload["aggregate_version"]),
            tenant_id=payload["tenant_id"],
            clinic_id=payload.get("clinic_id"),
            correlation_id=payload["correlation_id"],
            causation_id=payload.get("causation_id"),
            user_id=payload.get("user_id"),
            created_at=created_at,
            event_data=dict(payload.get("event_data") or {}),
            metadata=dict(payload.get("metadata") or {}),
        )

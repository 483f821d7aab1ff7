"""Audit trail for mutating operations."""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy.orm import Session

from healz.core.clock import utcnow
from healz.logging_utils import get_correlation_id
from healz.models import AuditLog


def record_audit(
    session: Session,
    *,
    tenant_id: uuid.UUID | str,
    action: str,
    resource: str | None = None,
    actor: str | None = None,
    clinic_id: uuid.UUID | str | None = None,
    correlation_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuditLog:
    entry = AuditLog(
        tenant_id=uuid.UUID(str(tenant_id)),
        clinic_id=uuid.UUID(str(clinic_id)) if clinic_id else None,
        actor=actor,
        action=action,
        resource=resource,
        correlation_id=correlation_id or get_correlation_id(),
        occurred_at=utcnow(),
        metadata_json=metadata or {},
    )
    session.add(entry)
    session.flush()
    return entry

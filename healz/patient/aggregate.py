"""Patient aggregate: registration, profile updates and lifecycle status."""

from __future__ import annotations

import re
from typing import Any

from healz.event_sourcing.aggregate import AggregateRoot, applies
from healz.event_sourcing.domain_event import DomainEvent
from healz.event_sourcing.errors import InvariantViolation

PATIENT_REGISTERED = "PatientRegistered"
PATIENT_UPDATED = "PatientUpdated"
PATIENT_DEACTIVATED = "PatientDeactivated"
PATIENT_SUSPENDED = "PatientSuspended"
PATIENT_REACTIVATED = "PatientReactivated"

ACTIVE = "active"
INACTIVE = "inactive"
SUSPENDED = "suspended"

_UPDATABLE_FIELDS = ("full_name", "email", "birth_date")


def normalize_phone(raw_phone: str | None) -> str:
    """Reduce a phone number to ``+`` followed by its digits."""

    digits = re.sub(r"\D", "", raw_phone or "")
    if len(digits) < 8 or len(digits) > 15:
        raise InvariantViolation("Phone must contain between 8 and 15 digits")
    return f"+{digits}"


class Patient(AggregateRoot):
    aggregate_type = "Patient"

    def __init__(self) -> None:
        super().__init__()
        self.phone: str | None = None
        self.full_name: str | None = None
        self.email: str | None = None
        self.birth_date: str | None = None
        self.status = ACTIVE

    @classmethod
    def register(
        cls,
        *,
        patient_id: str,
        tenant_id: str,
        clinic_id: str,
        phone: str,
        correlation_id: str,
        full_name: str | None = None,
        email: str | None = None,
        birth_date: str | None = None,
        user_id: str | None = None,
    ) -> "Patient":
        if not phone:
            raise InvariantViolation("Phone is required")
        patient = cls()
        patient._raise_event(
            PATIENT_REGISTERED,
            {
                "patient_id": str(patient_id),
                "tenant_id": str(tenant_id),
                "clinic_id": str(clinic_id),
                "phone": normalize_phone(phone),
                "full_name": full_name,
                "email": email,
                "birth_date": birth_date,
            },
            correlation_id=correlation_id,
            user_id=user_id,
            aggregate_id=str(patient_id),
            tenant_id=str(tenant_id),
            clinic_id=str(clinic_id),
        )
        return patient

    def update(
        self,
        *,
        correlation_id: str,
        user_id: str | None = None,
        **changes: Any,
    ) -> DomainEvent | None:
        """Record profile changes; returns ``None`` when nothing differs."""

        if self.status == SUSPENDED:
            raise InvariantViolation("Cannot update suspended patient")

        unknown = set(changes) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise InvariantViolation(f"Unknown patient fields: {sorted(unknown)}")

        updates = {
            name: value
            for name, value in changes.items()
            if value is not None and getattr(self, name) != value
        }
        if not updates:
            return None

        return self._raise_event(
            PATIENT_UPDATED,
            {"patient_id": self.id, "updates": updates},
            correlation_id=correlation_id,
            user_id=user_id,
        )

    def deactivate(
        self, *, correlation_id: str, reason: str | None = None, user_id: str | None = None
    ) -> DomainEvent:
        if self.status != ACTIVE:
            raise InvariantViolation(f"Cannot deactivate a {self.status} patient")
        return self._raise_event(
            PATIENT_DEACTIVATED,
            {"patient_id": self.id, "reason": reason},
            correlation_id=correlation_id,
            user_id=user_id,
        )

    def suspend(
        self, *, correlation_id: str, reason: str | None = None, user_id: str | None = None
    ) -> DomainEvent:
        if self.status == SUSPENDED:
            raise InvariantViolation("Patient is already suspended")
        return self._raise_event(
            PATIENT_SUSPENDED,
            {"patient_id": self.id, "reason": reason},
            correlation_id=correlation_id,
            user_id=user_id,
        )

    def reactivate(self, *, correlation_id: str, user_id: str | None = None) -> DomainEvent:
        if self.status == ACTIVE:
            raise InvariantViolation("Patient is already active")
        return self._raise_event(
            PATIENT_REACTIVATED,
            {"patient_id": self.id},
            correlation_id=correlation_id,
            user_id=user_id,
        )

    @applies(PATIENT_REGISTERED)
    def _on_registered(self, event: DomainEvent) -> None:
        data = event.event_data
        self.id = data["patient_id"]
        self.tenant_id = data["tenant_id"]
        self.clinic_id = data["clinic_id"]
        self.phone = data["phone"]
        self.full_name = data.get("full_name")
        self.email = data.get("email")
        self.birth_date = data.get("birth_date")
        self.status = ACTIVE

    @applies(PATIENT_UPDATED)
    def _on_updated(self, event: DomainEvent) -> None:
        for name, value in event.event_data.get("updates", {}).items():
            if name in _UPDATABLE_FIELDS:
                setattr(self, name, value)

    @applies(PATIENT_DEACTIVATED)
    def _on_deactivated(self, event: DomainEvent) -> None:
        self.status = INACTIVE

    @applies(PATIENT_SUSPENDED)
    def _on_suspended(self, event: DomainEvent) -> None:
        self.status = SUSPENDED

    @applies(PATIENT_REACTIVATED)
    def _on_reactivated(self, event: DomainEvent) -> None:
        self.status = ACTIVE

"""Exceptions raised by aggregates, the event store and command handlers."""

from __future__ import annotations


class DomainError(Exception):
    """Base class for errors raised by the domain layer."""


class InvariantViolation(DomainError):
    """A command was rejected because it would break an aggregate rule."""


class InvalidStageTransition(InvariantViolation):
    """A patient journey was asked to move to a stage it cannot reach."""

    def __init__(self, current: str, requested: str) -> None:
        super().__init__(f"Invalid transition from {current} to {requested}")
        self.current = current
        self.requested = requested


class ConcurrencyError(DomainError):
    """Another writer appended to the same aggregate stream first."""

    def __init__(
        self,
        aggregate_id: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
        message: str | None = None,
    ) -> None:
        if message is None:
            message = (
                f"Aggregate {aggregate_id} is at version {actual_version}, "
                f"expected {expected_version}"
            )
        super().__init__(message)
        self.aggregate_id = aggregate_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class AggregateNotFound(DomainError):
    """No events exist for the requested aggregate."""

    def __init__(self, aggregate_type: str, aggregate_id: str) -> None:
        super().__init__(f"{aggregate_type} {aggregate_id} not found")
        self.aggregate_type = aggregate_type
        self.aggregate_id = aggregate_id

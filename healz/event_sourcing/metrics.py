"""Prometheus instruments for the event-sourcing core."""

from prometheus_client import Counter

EVENTS_APPENDED = Counter(
    "healz_events_appended_total",
    "Domain events appended to the event store.",
    ["aggregate_type"],
)
CONCURRENCY_CONFLICTS = Counter(
    "healz_concurrency_conflicts_total",
    "Appends rejected because the aggregate version moved.",
    ["aggregate_type"],
)
DISPATCH_FAILURES = Counter(
    "healz_event_dispatch_failures_total",
    "Event handlers that raised while processing an event.",
    ["event_type"],
)

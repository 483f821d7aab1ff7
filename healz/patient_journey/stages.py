"""Patient journey stages and the moves allowed between them."""

from __future__ import annotations

import enum


class JourneyStage(str, enum.Enum):
    LEAD = "lead"
    ENGAGED = "engaged"
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_TREATMENT = "in_treatment"
    COMPLETED = "completed"
    DROPPED = "dropped"
    AT_RISK = "at_risk"


STAGE_TRANSITIONS: dict[JourneyStage, frozenset[JourneyStage]] = {
    JourneyStage.LEAD: frozenset({JourneyStage.ENGAGED, JourneyStage.DROPPED}),
    JourneyStage.ENGAGED: frozenset(
        {JourneyStage.SCHEDULED, JourneyStage.AT_RISK, JourneyStage.DROPPED}
    ),
    JourneyStage.SCHEDULED: frozenset(
        {
            JourneyStage.CONFIRMED,
            JourneyStage.AT_RISK,
            JourneyStage.ENGAGED,
            JourneyStage.DROPPED,
        }
    ),
    JourneyStage.CONFIRMED: frozenset(
        {JourneyStage.IN_TREATMENT, JourneyStage.AT_RISK, JourneyStage.SCHEDULED}
    ),
    JourneyStage.IN_TREATMENT: frozenset(
        {JourneyStage.COMPLETED, JourneyStage.SCHEDULED}
    ),
    JourneyStage.COMPLETED: frozenset(),
    JourneyStage.DROPPED: frozenset({JourneyStage.ENGAGED}),
    JourneyStage.AT_RISK: frozenset(
        {
            JourneyStage.ENGAGED,
            JourneyStage.SCHEDULED,
            JourneyStage.CONFIRMED,
            JourneyStage.DROPPED,
        }
    ),
}


def can_transition(current: JourneyStage | str, target: JourneyStage | str) -> bool:
    return JourneyStage(target) in STAGE_TRANSITIONS[JourneyStage(current)]

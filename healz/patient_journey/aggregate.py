"""PatientJourney aggregate: where a patient stands in the care funnel."""

from __future__ import annotations

from typing import Any, Iterable

from healz.core.clock import utcnow
from healz.event_sourcing.aggregate import AggregateRoot, applies
from healz.event_sourcing.domain_event import DomainEvent
from healz.event_sourcing.errors import InvalidStageTransition, InvariantViolation
from healz.patient_journey.risk import RiskFactor, calculate_risk_score, risk_level
from healz.patient_journey.stages import JourneyStage, can_transition

JOURNEY_STARTED = "JourneyStarted"
JOURNEY_STAGE_CHANGED = "JourneyStageChanged"
RISK_DETECTED = "RiskDetected"
RISK_SCORE_RECALCULATED = "RiskScoreRecalculated"
JOURNEY_MILESTONE_REACHED = "JourneyMilestoneReached"

_ESCALATING_LEVELS = frozenset({"high", "critical"})


def _validated(factors: Iterable[RiskFactor]) -> list[RiskFactor]:
    factors = list(factors)
    for factor in factors:
        if not 0.0 <= factor.weight <= 1.0:
            raise InvariantViolation(f"Risk factor {factor.name} weight must be in [0, 1]")
        if not 0 <= factor.score <= 100:
            raise InvariantViolation(f"Risk factor {factor.name} score must be in [0, 100]")
    return factors


class PatientJourney(AggregateRoot):
    aggregate_type = "PatientJourney"

    def __init__(self) -> None:
        super().__init__()
        self.patient_id: str | None = None
        self.current_stage = JourneyStage.LEAD
        self.risk_score = 0
        self.milestones: list[str] = []
        self.stage_history: list[dict[str, Any]] = []

    @property
    def risk_level(self) -> str:
        return risk_level(self.risk_score)

    @classmethod
    def start(
        cls,
        *,
        journey_id: str,
        patient_id: str,
        tenant_id: str,
        clinic_id: str | None,
        correlation_id: str,
        causation_id: str | None = None,
    ) -> "PatientJourney":
        journey = cls()
        journey._raise_event(
            JOURNEY_STARTED,
            {
                "journey_id": str(journey_id),
                "patient_id": str(patient_id),
                "tenant_id": str(tenant_id),
                "clinic_id": str(clinic_id) if clinic_id else None,
                "initial_stage": JourneyStage.LEAD.value,
            },
            correlation_id=correlation_id,
            causation_id=causation_id,
            aggregate_id=str(journey_id),
            tenant_id=str(tenant_id),
            clinic_id=str(clinic_id) if clinic_id else None,
        )
        return journey

    def can_transition_to(self, stage: JourneyStage | str) -> bool:
        return can_transition(self.current_stage, stage)

    def transition_to(
        self,
        new_stage: JourneyStage | str,
        *,
        reason: str,
        triggered_by: str,
        correlation_id: str,
        causation_id: str | None = None,
    ) -> DomainEvent:
        target = JourneyStage(new_stage)
        if not self.can_transition_to(target):
            raise InvalidStageTransition(self.current_stage.value, target.value)
        return self._raise_event(
            JOURNEY_STAGE_CHANGED,
            {
                "journey_id": self.id,
                "previous_stage": self.current_stage.value,
                "new_stage": target.value,
                "reason": reason,
                "triggered_by": triggered_by,
            },
            correlation_id=correlation_id,
            causation_id=causation_id,
        )

    def detect_risk(
        self,
        factors: Iterable[RiskFactor],
        *,
        correlation_id: str,
        causation_id: str | None = None,
    ) -> list[DomainEvent]:
        """Record detected risk; high or critical risk moves the journey to at_risk."""

        factors = _validated(factors)
        score = calculate_risk_score(factors)
        level = risk_level(score)
        raised = [
            self._raise_event(
                RISK_DETECTED,
                {
                    "journey_id": self.id,
                    "risk_factors": [factor.to_dict() for factor in factors],
                    "risk_score": score,
                    "risk_level": level,
                },
                correlation_id=correlation_id,
                causation_id=causation_id,
            )
        ]

        if (
            level in _ESCALATING_LEVELS
            and self.current_stage not in (JourneyStage.AT_RISK, JourneyStage.COMPLETED)
            and self.can_transition_to(JourneyStage.AT_RISK)
        ):
            raised.append(
                self.transition_to(
                    JourneyStage.AT_RISK,
                    reason=f"High risk detected: {score}",
                    triggered_by="system",
                    correlation_id=correlation_id,
                    causation_id=causation_id,
                )
            )
        return raised

    def recalculate_risk_score(
        self,
        factors: Iterable[RiskFactor],
        *,
        correlation_id: str,
        causation_id: str | None = None,
    ) -> DomainEvent:
        factors = _validated(factors)
        return self._raise_event(
            RISK_SCORE_RECALCULATED,
            {
                "journey_id": self.id,
                "previous_score": self.risk_score,
                "new_score": calculate_risk_score(factors),
                "factors": [factor.to_dict() for factor in factors],
            },
            correlation_id=correlation_id,
            causation_id=causation_id,
        )

    def reach_milestone(
        self,
        milestone: str,
        *,
        correlation_id: str,
        causation_id: str | None = None,
    ) -> DomainEvent | None:
        if milestone in self.milestones:
            return None
        return self._raise_event(
            JOURNEY_MILESTONE_REACHED,
            {
                "journey_id": self.id,
                "milestone": milestone,
                "reached_at": utcnow().isoformat(),
            },
            correlation_id=correlation_id,
            causation_id=causation_id,
        )

    @applies(JOURNEY_STARTED)
    def _on_started(self, event: DomainEvent) -> None:
        data = event.event_data
        self.id = data["journey_id"]
        self.patient_id = data["patient_id"]
        self.tenant_id = data["tenant_id"]
        self.clinic_id = data.get("clinic_id")
        self.current_stage = JourneyStage(data["initial_stage"])
        self.risk_score = 0
        self.stage_history.append(
            {"stage": data["initial_stage"], "timestamp": event.created_at.isoformat()}
        )

    @applies(JOURNEY_STAGE_CHANGED)
    def _on_stage_changed(self, event: DomainEvent) -> None:
        self.current_stage = JourneyStage(event.event_data["new_stage"])
        self.stage_history.append(
            {
                "stage": event.event_data["new_stage"],
                "timestamp": event.created_at.isoformat(),
            }
        )

    @applies(RISK_DETECTED)
    def _on_risk_detected(self, event: DomainEvent) -> None:
        self.risk_score = int(event.event_data["risk_score"])

    @applies(RISK_SCORE_RECALCULATED)
    def _on_risk_recalculated(self, event: DomainEvent) -> None:
        self.risk_score = int(event.event_data["new_score"])

    @applies(JOURNEY_MILESTONE_REACHED)
    def _on_milestone_reached(self, event: DomainEvent) -> None:
        milestone = event.event_data["milestone"]
        if milestone not in self.milestones:
            self.milestones.append(milestone)

"""Risk scoring for patient journeys."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable


@dataclass(frozen=True)
class RiskFactor:
    name: str
    weight: float
    score: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "RiskFactor":
        return cls(
            name=payload["name"],
            weight=float(payload["weight"]),
            score=int(payload["score"]),
        )


NO_SHOW = RiskFactor("no_show", 1.0, 100)
FREQUENT_CANCELLATIONS = RiskFactor("frequent_cancellations", 0.8, 75)
UNRESPONSIVE = RiskFactor("unresponsive", 0.6, 60)
NOT_CONFIRMED = RiskFactor("not_confirmed", 0.5, 50)
MULTIPLE_RESCHEDULES = RiskFactor("multiple_reschedules", 0.4, 40)
INACTIVE = RiskFactor("inactive", 0.3, 30)

RISK_FACTORS: dict[str, RiskFactor] = {
    factor.name: factor
    for factor in (
        NO_SHOW,
        FREQUENT_CANCELLATIONS,
        UNRESPONSIVE,
        NOT_CONFIRMED,
        MULTIPLE_RESCHEDULES,
        INACTIVE,
    )
}


def calculate_risk_score(factors: Iterable[RiskFactor]) -> int:
    """Weighted average of factor scores, rounded half up; 0 without factors."""

    factors = list(factors)
    total_weight = sum(Decimal(str(factor.weight)) for factor in factors)
    if not factors or total_weight == 0:
        return 0
    weighted = sum(Decimal(str(factor.weight)) * factor.score for factor in factors)
    return int((weighted / total_weight).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def risk_level(score: int) -> str:
    if score < 25:
        return "low"
    if score < 50:
        return "medium"
    if score < 75:
        return "high"
    return "critical"

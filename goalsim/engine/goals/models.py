"""Domain records shared by the simulator, the registry and the controller."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

__all__ = [
    "RiskTier",
    "TierParameters",
    "DEFAULT_TIER_PARAMETERS",
    "DEFAULT_MIN_SUCCESS_PROBABILITY",
    "Goal",
    "RiskProfile",
    "SimulationResult",
    "RebalanceEvent",
    "Notification",
    "lower_tier",
]

DEFAULT_MIN_SUCCESS_PROBABILITY = 0.70


class RiskTier(str, Enum):
    """Named risk bucket mapped to a fixed return/volatility pair."""

    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


_DOWNGRADE_ORDER: dict[RiskTier, RiskTier | None] = {
    RiskTier.AGGRESSIVE: RiskTier.MODERATE,
    RiskTier.MODERATE: RiskTier.CONSERVATIVE,
    RiskTier.CONSERVATIVE: None,
}


def lower_tier(tier: RiskTier | str) -> RiskTier | None:
    """Return the next lower tier, or ``None`` when ``tier`` is the floor."""

    return _DOWNGRADE_ORDER[RiskTier(tier)]


@dataclass(frozen=True)
class TierParameters:
    """Annualised parametric return model for one risk tier.

    Attributes:
      mean_return: Expected annual return (``0.07`` for 7%).
      volatility: Annual standard deviation of returns.
    """

    mean_return: float
    volatility: float

    @classmethod
    def from_mapping(cls, payload: Mapping[str, object]) -> TierParameters:
        return cls(
            mean_return=float(payload["mean"]),  # type: ignore[arg-type]
            volatility=float(payload["vol"]),  # type: ignore[arg-type]
        )


DEFAULT_TIER_PARAMETERS: dict[RiskTier, TierParameters] = {
    RiskTier.CONSERVATIVE: TierParameters(mean_return=0.04, volatility=0.05),
    RiskTier.MODERATE: TierParameters(mean_return=0.07, volatility=0.12),
    RiskTier.AGGRESSIVE: TierParameters(mean_return=0.10, volatility=0.20),
}


@dataclass(frozen=True)
class Goal:
    """Savings goal as supplied by the goal directory.

    Attributes:
      goal_id: Identifier of the goal.
      user_id: Owner of the goal.
      target_amount: Amount the goal must reach by ``target_date``.
      target_date: Date by which the target should be met.
      current_amount: Amount already saved.
      monthly_contribution: Fixed amount added at the end of every month.
      title: Human readable label used in notifications.
      status: Lifecycle status; only ``"active"`` goals are swept.
    """

    goal_id: str
    user_id: str
    target_amount: float
    target_date: date | datetime
    current_amount: float = 0.0
    monthly_contribution: float = 0.0
    title: str = ""
    status: str = "active"

    @property
    def label(self) -> str:
        return self.title or self.goal_id


@dataclass(frozen=True)
class RiskProfile:
    """Per-goal risk settings owned by the registry.

    ``version`` increases on every write to the tier so that concurrent
    writers can detect each other with a compare-and-swap.
    """

    goal_id: str
    risk_tier: RiskTier = RiskTier.MODERATE
    auto_rebalance: bool = False
    min_success_probability: float = DEFAULT_MIN_SUCCESS_PROBABILITY
    last_simulation_at: datetime | None = None
    version: int = 0


@dataclass(frozen=True)
class SimulationResult:
    """Outcome of one Monte Carlo run; append-only history entry."""

    goal_id: str
    user_id: str
    iterations: int
    p1: float
    p10: float
    p50: float
    p90: float
    success_probability: float
    expected_shortfall: float
    risk_tier: RiskTier
    horizon_months: int
    target_amount: float
    created_at: datetime
    result_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["risk_tier"] = self.risk_tier.value
        return payload


@dataclass(frozen=True)
class RebalanceEvent:
    """Record of one automatic tier downgrade."""

    goal_id: str
    previous_tier: RiskTier
    new_tier: RiskTier
    success_probability: float
    window: str
    created_at: datetime


@dataclass(frozen=True)
class Notification:
    """Payload handed to the notifier."""

    title: str
    message: str
    kind: str
    metadata: dict[str, Any] = field(default_factory=dict)

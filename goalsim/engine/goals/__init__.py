"""Goal-outcome Monte Carlo engine and adaptive de-risking loop."""

from .controller import AdaptiveRiskController, EvaluationOutcome, GoalEvaluation, SweepReport
from .guard import DEFAULT_COOLDOWN_SECONDS, DEFAULT_REQUEST_ITERATIONS, SimulationRequestGuard
from .mc import (
    DEFAULT_MAX_ITERATIONS,
    STRESS_REGIMES,
    PathStatistics,
    SimulationEngine,
    horizon_months,
    simulate_final_balances,
    stressed_parameters,
    summarise_final_balances,
)
from .models import (
    DEFAULT_TIER_PARAMETERS,
    Goal,
    Notification,
    RebalanceEvent,
    RiskProfile,
    RiskTier,
    SimulationResult,
    TierParameters,
    lower_tier,
)
from .profiles import RiskProfileRegistry
from .reporting import history_frame, write_history_csv
from .scheduler import SweepScheduler, WeeklySchedule
from .stores import (
    GoalDirectory,
    InMemoryGoalDirectory,
    InMemoryResultStore,
    Notifier,
    RecordingNotifier,
    ResultStore,
    utc_now,
)

__all__ = [
    "AdaptiveRiskController",
    "EvaluationOutcome",
    "GoalEvaluation",
    "SweepReport",
    "DEFAULT_COOLDOWN_SECONDS",
    "DEFAULT_REQUEST_ITERATIONS",
    "SimulationRequestGuard",
    "DEFAULT_MAX_ITERATIONS",
    "STRESS_REGIMES",
    "PathStatistics",
    "SimulationEngine",
    "horizon_months",
    "simulate_final_balances",
    "stressed_parameters",
    "summarise_final_balances",
    "DEFAULT_TIER_PARAMETERS",
    "Goal",
    "Notification",
    "RebalanceEvent",
    "RiskProfile",
    "RiskTier",
    "SimulationResult",
    "TierParameters",
    "lower_tier",
    "RiskProfileRegistry",
    "history_frame",
    "write_history_csv",
    "SweepScheduler",
    "WeeklySchedule",
    "GoalDirectory",
    "InMemoryGoalDirectory",
    "InMemoryResultStore",
    "Notifier",
    "RecordingNotifier",
    "ResultStore",
    "utc_now",
]

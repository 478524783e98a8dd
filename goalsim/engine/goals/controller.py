"""Adaptive risk controller run by the weekly sweep.

For every active goal the controller simulates the current tier and moves the
goal through ``Evaluate -> {NoAction, Downgrade, Escalate}``:

* success probability at or above the goal's floor: nothing happens;
* below the floor with auto-rebalance on and a lower tier available: the tier
  is downgraded with a compare-and-swap, a :class:`RebalanceEvent` is appended
  and the user is told about the automatic change;
* otherwise the user receives an urgent warning and the profile is untouched.

Goals are independent: one goal's failure is logged, counted and skipped, and
the sweep moves on. A rebalance event already recorded for the same
``(goal, window)`` turns a repeated evaluation into a no-op.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from goalsim.engine.logging import record_metrics, setup_logger

from .mc import DEFAULT_MAX_ITERATIONS, SimulationEngine
from .models import Goal, Notification, RiskTier, SimulationResult, lower_tier
from .profiles import RiskProfileRegistry
from .scheduler import WeeklySchedule
from .stores import Clock, GoalDirectory, Notifier, ResultStore, utc_now

__all__ = [
    "EvaluationOutcome",
    "GoalEvaluation",
    "SweepReport",
    "AdaptiveRiskController",
]

LOG = setup_logger(__name__)

REBALANCE_KIND = "risk_rebalance"
WARNING_KIND = "risk_warning"


class EvaluationOutcome(str, Enum):
    NO_ACTION = "no_action"
    DOWNGRADE = "downgrade"
    ESCALATE = "escalate"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class GoalEvaluation:
    """Outcome of one goal within a sweep."""

    goal_id: str
    outcome: EvaluationOutcome
    success_probability: float | None = None
    previous_tier: RiskTier | None = None
    new_tier: RiskTier | None = None
    error: str | None = None


@dataclass
class SweepReport:
    """Aggregate of a sweep, one entry per goal in the snapshot."""

    window: str
    started_at: datetime
    evaluations: list[GoalEvaluation] = field(default_factory=list)

    def count(self, outcome: EvaluationOutcome) -> int:
        return sum(1 for item in self.evaluations if item.outcome is outcome)

    @property
    def failures(self) -> list[GoalEvaluation]:
        return [item for item in self.evaluations if item.outcome is EvaluationOutcome.FAILED]


def _rebalanced_notification(
    goal: Goal, previous: RiskTier, new: RiskTier, probability: float
) -> Notification:
    return Notification(
        title="Goal Risk Automatically Rebalanced",
        message=(
            f'Your goal "{goal.label}" has a projected success probability of '
            f"{probability * 100:.1f}%. We moved it from a {previous.value} to a "
            f"{new.value} risk profile to preserve capital."
        ),
        kind=REBALANCE_KIND,
        metadata={
            "goal_id": goal.goal_id,
            "previous_tier": previous.value,
            "new_tier": new.value,
            "success_probability": probability,
        },
    )


def _warning_notification(goal: Goal, probability: float, threshold: float) -> Notification:
    return Notification(
        title="URGENT: Goal Probability Low",
        message=(
            f'Your goal "{goal.label}" has a success probability of '
            f"{probability * 100:.1f}% (target {threshold * 100:.0f}%). "
            "Consider increasing your monthly contributions."
        ),
        kind=WARNING_KIND,
        metadata={
            "goal_id": goal.goal_id,
            "success_probability": probability,
            "min_success_probability": threshold,
        },
    )


class AdaptiveRiskController:
    """Evaluate active goals and de-risk the ones falling below their floor."""

    def __init__(
        self,
        engine: SimulationEngine,
        registry: RiskProfileRegistry,
        store: ResultStore,
        directory: GoalDirectory,
        notifier: Notifier,
        *,
        schedule: WeeklySchedule | None = None,
        clock: Clock = utc_now,
        iterations: int = DEFAULT_MAX_ITERATIONS,
        max_workers: int = 4,
        goal_timeout: float | None = None,
    ) -> None:
        self._engine = engine
        self._registry = registry
        self._store = store
        self._directory = directory
        self._notifier = notifier
        self.schedule = schedule or WeeklySchedule()
        self._clock = clock
        self.iterations = int(iterations)
        self.max_workers = max(1, int(max_workers))
        self.goal_timeout = goal_timeout

    def _notify(self, goal: Goal, notification: Notification) -> None:
        try:
            self._notifier.send(goal.user_id, notification)
        except Exception as exc:
            LOG.warning(
                "notification failed goal=%s kind=%s: %s",
                goal.goal_id,
                notification.kind,
                exc,
                extra={"goal_id": goal.goal_id, "event": "NOTIFY_FAILED"},
            )
            record_metrics("notification_failures", 1.0, {"kind": notification.kind})

    def _simulate(self, goal: Goal, tier: RiskTier) -> SimulationResult:
        return self._engine.simulate(goal, tier, self.iterations, timeout=self.goal_timeout)

    def evaluate(self, goal: Goal, window: str) -> GoalEvaluation:
        """Run one goal through the state machine.

        Exceptions propagate; :meth:`sweep` turns them into ``FAILED`` entries.
        """

        if self._store.has_rebalance_event(goal.goal_id, window):
            LOG.info(
                "goal=%s already rebalanced in window=%s; skipping",
                goal.goal_id,
                window,
                extra={"goal_id": goal.goal_id, "window": window, "outcome": "skipped"},
            )
            return GoalEvaluation(goal.goal_id, EvaluationOutcome.SKIPPED)

        profile = self._registry.get_or_create(goal.goal_id)
        result = self._simulate(goal, profile.risk_tier)
        probability = result.success_probability

        if probability >= profile.min_success_probability:
            return GoalEvaluation(goal.goal_id, EvaluationOutcome.NO_ACTION, probability)

        target = lower_tier(profile.risk_tier)
        if profile.auto_rebalance and target is not None:
            updated = self._registry.downgrade(
                goal.goal_id,
                expected_tier=profile.risk_tier,
                expected_version=profile.version,
                window=window,
                success_probability=probability,
                at=self._clock(),
            )
            if updated is not None:
                self._notify(
                    goal,
                    _rebalanced_notification(goal, profile.risk_tier, updated.risk_tier, probability),
                )
                return GoalEvaluation(
                    goal.goal_id,
                    EvaluationOutcome.DOWNGRADE,
                    probability,
                    previous_tier=profile.risk_tier,
                    new_tier=updated.risk_tier,
                )

        self._notify(goal, _warning_notification(goal, probability, profile.min_success_probability))
        return GoalEvaluation(
            goal.goal_id,
            EvaluationOutcome.ESCALATE,
            probability,
            previous_tier=profile.risk_tier,
        )

    def _guarded_evaluate(self, goal: Goal, window: str) -> GoalEvaluation:
        started = time.perf_counter()
        try:
            evaluation = self.evaluate(goal, window)
        except Exception as exc:
            LOG.error(
                "evaluation failed goal=%s: %s: %s",
                goal.goal_id,
                type(exc).__name__,
                exc,
                extra={"goal_id": goal.goal_id, "window": window, "outcome": "failed"},
            )
            record_metrics("sweep_goal_failures", 1.0, {"error": type(exc).__name__})
            return GoalEvaluation(
                goal.goal_id, EvaluationOutcome.FAILED, error=f"{type(exc).__name__}: {exc}"
            )
        LOG.info(
            "goal=%s outcome=%s",
            goal.goal_id,
            evaluation.outcome.value,
            extra={
                "goal_id": goal.goal_id,
                "window": window,
                "outcome": evaluation.outcome.value,
                "success_probability": evaluation.success_probability,
                "process_time_ms": (time.perf_counter() - started) * 1_000.0,
            },
        )
        return evaluation

    def sweep(self, now: datetime | None = None) -> SweepReport:
        """Evaluate every active goal of the directory snapshot.

        Args:
          now: Instant identifying the scheduling window; defaults to the clock.

        Returns:
          A :class:`SweepReport` with one evaluation per goal.
        """

        moment = now if now is not None else self._clock()
        window = self.schedule.window_for(moment)
        goals: Sequence[Goal] = list(self._directory.list_active_goals())
        report = SweepReport(window=window, started_at=moment)
        LOG.info("sweep window=%s goals=%d", window, len(goals), extra={"window": window})

        if self.max_workers == 1 or len(goals) <= 1:
            report.evaluations = [self._guarded_evaluate(goal, window) for goal in goals]
        else:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(goals))) as pool:
                report.evaluations = list(
                    pool.map(lambda goal: self._guarded_evaluate(goal, window), goals)
                )

        for outcome in EvaluationOutcome:
            record_metrics(f"sweep_{outcome.value}", report.count(outcome), {"window": window})
        LOG.info(
            "sweep done window=%s no_action=%d downgrade=%d escalate=%d skipped=%d failed=%d",
            window,
            report.count(EvaluationOutcome.NO_ACTION),
            report.count(EvaluationOutcome.DOWNGRADE),
            report.count(EvaluationOutcome.ESCALATE),
            report.count(EvaluationOutcome.SKIPPED),
            report.count(EvaluationOutcome.FAILED),
        )
        return report

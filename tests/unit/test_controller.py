"""Adaptive risk controller: downgrade, escalation, idempotency and isolation."""

from __future__ import annotations

from datetime import timedelta

import pytest

from goalsim.engine.errors import SimulationTimeoutError, StaleProfileError
from goalsim.engine.goals import (
    AdaptiveRiskController,
    EvaluationOutcome,
    Goal,
    InMemoryResultStore,
    RiskProfile,
    RiskProfileRegistry,
    RiskTier,
    SimulationResult,
)


class StubEngine:
    """Engine double returning a fixed success probability per goal."""

    def __init__(
        self,
        store,
        clock,
        probabilities: dict[str, float],
        failing: set[str] = frozenset(),
        *,
        timing_out: set[str] = frozenset(),
        on_simulate=None,
    ):
        self._store = store
        self._clock = clock
        self.probabilities = probabilities
        self.failing = set(failing)
        self.timing_out = set(timing_out)
        self.on_simulate = on_simulate
        self.calls: list[tuple[str, RiskTier]] = []
        self.timeouts: list[float | None] = []

    def simulate(self, goal: Goal, risk_tier, iterations, *, timeout=None, generator=None):
        tier = RiskTier(risk_tier)
        self.calls.append((goal.goal_id, tier))
        self.timeouts.append(timeout)
        if goal.goal_id in self.failing:
            raise ConnectionError("result store unavailable")
        if goal.goal_id in self.timing_out:
            raise SimulationTimeoutError(f"simulation exceeded {timeout}s")
        if self.on_simulate is not None:
            self.on_simulate(goal)
        result = SimulationResult(
            goal_id=goal.goal_id,
            user_id=goal.user_id,
            iterations=iterations,
            p1=1.0,
            p10=2.0,
            p50=3.0,
            p90=4.0,
            success_probability=self.probabilities[goal.goal_id],
            expected_shortfall=0.0,
            risk_tier=tier,
            horizon_months=12,
            target_amount=goal.target_amount,
            created_at=self._clock(),
        )
        return self._store.append_result(result)


class FailingNotifier:
    def send(self, user_id, notification):
        raise TimeoutError("smtp down")


@pytest.fixture()
def build(store, registry, directory, notifier, clock):
    def _build(
        probabilities,
        *,
        failing=frozenset(),
        timing_out=frozenset(),
        on_simulate=None,
        notifier_override=None,
        store_override=None,
        workers=4,
        goal_timeout=None,
    ):
        target_store = store_override or store
        engine = StubEngine(
            target_store,
            clock,
            probabilities,
            failing,
            timing_out=timing_out,
            on_simulate=on_simulate,
        )
        controller = AdaptiveRiskController(
            engine,
            RiskProfileRegistry(target_store) if store_override is not None else registry,
            target_store,
            directory,
            notifier_override or notifier,
            clock=clock,
            iterations=10_000,
            max_workers=workers,
            goal_timeout=goal_timeout,
        )
        return controller, engine

    return _build


def _profile(store, goal_id: str, tier: RiskTier, auto: bool = True) -> None:
    store.create_profile(
        RiskProfile(
            goal_id=goal_id, risk_tier=tier, auto_rebalance=auto, min_success_probability=0.70
        )
    )


def test_low_probability_with_auto_rebalance_downgrades_once(
    build, store, directory, notifier, goal_factory
) -> None:
    directory.add(goal_factory("g1"))
    _profile(store, "g1", RiskTier.AGGRESSIVE)
    controller, engine = build({"g1": 0.55})

    report = controller.sweep()
    assert [item.outcome for item in report.evaluations] == [EvaluationOutcome.DOWNGRADE]
    assert store.get_profile("g1").risk_tier is RiskTier.MODERATE
    events = store.list_rebalance_events("g1")
    assert len(events) == 1
    assert (events[0].previous_tier, events[0].new_tier) == (
        RiskTier.AGGRESSIVE,
        RiskTier.MODERATE,
    )
    assert events[0].window == report.window
    assert len(notifier.sent) == 1
    user_id, notification = notifier.sent[0]
    assert user_id == "u1"
    assert notification.title == "Goal Risk Automatically Rebalanced"
    assert notification.kind == "risk_rebalance"

    second = controller.sweep()
    assert second.window == report.window
    assert [item.outcome for item in second.evaluations] == [EvaluationOutcome.SKIPPED]
    assert store.get_profile("g1").risk_tier is RiskTier.MODERATE
    assert len(store.list_rebalance_events("g1")) == 1
    assert len(notifier.sent) == 1
    assert len(engine.calls) == 1


def test_conservative_floor_escalates_without_change(
    build, store, directory, notifier, goal_factory
) -> None:
    directory.add(goal_factory("g1"))
    _profile(store, "g1", RiskTier.CONSERVATIVE)
    before = store.get_profile("g1")
    controller, _ = build({"g1": 0.55})

    report = controller.sweep()
    assert report.count(EvaluationOutcome.ESCALATE) == 1
    assert store.list_rebalance_events("g1") == []
    assert store.get_profile("g1") == before
    assert [n.title for _, n in notifier.sent] == ["URGENT: Goal Probability Low"]
    assert notifier.sent[0][1].kind == "risk_warning"


def test_auto_rebalance_off_escalates(build, store, directory, notifier, goal_factory) -> None:
    directory.add(goal_factory("g1"))
    _profile(store, "g1", RiskTier.AGGRESSIVE, auto=False)
    controller, _ = build({"g1": 0.10})

    evaluation = controller.sweep().evaluations[0]
    assert evaluation.outcome is EvaluationOutcome.ESCALATE
    assert store.get_profile("g1").risk_tier is RiskTier.AGGRESSIVE


def test_probability_at_threshold_is_no_action(build, store, directory, notifier, goal_factory) -> None:
    directory.add(goal_factory("g1"))
    _profile(store, "g1", RiskTier.AGGRESSIVE)
    controller, _ = build({"g1": 0.70})

    assert controller.sweep().count(EvaluationOutcome.NO_ACTION) == 1
    assert notifier.sent == []


def test_new_window_allows_another_downgrade(
    build, store, directory, clock, goal_factory
) -> None:
    directory.add(goal_factory("g1"))
    _profile(store, "g1", RiskTier.AGGRESSIVE)
    controller, _ = build({"g1": 0.40})

    controller.sweep()
    clock.advance(days=7)
    report = controller.sweep()
    assert report.count(EvaluationOutcome.DOWNGRADE) == 1
    assert store.get_profile("g1").risk_tier is RiskTier.CONSERVATIVE
    assert len({event.window for event in store.list_rebalance_events("g1")}) == 2


def test_failing_goal_does_not_stop_the_sweep(build, store, directory, goal_factory) -> None:
    for goal_id in ("g1", "g2", "g3"):
        directory.add(goal_factory(goal_id))
        _profile(store, goal_id, RiskTier.MODERATE)
    controller, _ = build({"g1": 0.9, "g2": 0.9, "g3": 0.2}, failing={"g2"})

    report = controller.sweep()
    outcomes = {item.goal_id: item.outcome for item in report.evaluations}
    assert outcomes == {
        "g1": EvaluationOutcome.NO_ACTION,
        "g2": EvaluationOutcome.FAILED,
        "g3": EvaluationOutcome.DOWNGRADE,
    }
    assert report.failures[0].error.startswith("ConnectionError")


def test_notification_failure_keeps_downgrade(build, store, directory, goal_factory) -> None:
    directory.add(goal_factory("g1"))
    _profile(store, "g1", RiskTier.AGGRESSIVE)
    controller, _ = build({"g1": 0.3}, notifier_override=FailingNotifier())

    report = controller.sweep()
    assert report.count(EvaluationOutcome.DOWNGRADE) == 1
    assert store.get_profile("g1").risk_tier is RiskTier.MODERATE
    assert len(store.list_rebalance_events("g1")) == 1


def test_inactive_goals_are_not_swept(build, store, directory, goal_factory) -> None:
    directory.add(goal_factory("g1", status="completed"))
    controller, engine = build({"g1": 0.1})
    assert controller.sweep().evaluations == []
    assert engine.calls == []


def test_missing_profile_uses_defaults(build, store, directory, goal_factory) -> None:
    directory.add(goal_factory("g1"))
    controller, engine = build({"g1": 0.1}, workers=1)

    evaluation = controller.sweep().evaluations[0]
    # Default profiles have auto-rebalance disabled.
    assert evaluation.outcome is EvaluationOutcome.ESCALATE
    assert engine.calls == [("g1", RiskTier.MODERATE)]


def test_window_is_derived_from_sweep_instant(build, clock) -> None:
    controller, _ = build({})
    report = controller.sweep(clock() - timedelta(days=14))
    assert report.window == controller.schedule.window_for(clock() - timedelta(days=14))
    assert report.evaluations == []


class FlakyEventStore(InMemoryResultStore):
    """Store whose first rebalance event write fails."""

    def __init__(self) -> None:
        super().__init__()
        self.event_failures = 1

    def append_rebalance_event(self, event):
        if self.event_failures:
            self.event_failures -= 1
            raise ConnectionError("event table locked")
        return super().append_rebalance_event(event)


def test_retry_after_failed_event_write_downgrades_once(build, directory, goal_factory) -> None:
    flaky = FlakyEventStore()
    directory.add(goal_factory("g1"))
    _profile(flaky, "g1", RiskTier.AGGRESSIVE)
    controller, _ = build({"g1": 0.40}, store_override=flaky)

    first = controller.sweep()
    assert [item.outcome for item in first.evaluations] == [EvaluationOutcome.FAILED]
    assert flaky.get_profile("g1").risk_tier is RiskTier.AGGRESSIVE
    assert flaky.get_profile("g1").version == 0

    retry = controller.sweep()
    assert retry.window == first.window
    assert [item.outcome for item in retry.evaluations] == [EvaluationOutcome.DOWNGRADE]

    again = controller.sweep()
    assert [item.outcome for item in again.evaluations] == [EvaluationOutcome.SKIPPED]
    assert flaky.get_profile("g1").risk_tier is RiskTier.MODERATE
    assert len(flaky.list_rebalance_events("g1")) == 1


def test_user_edit_during_evaluation_wins(build, store, directory, notifier, goal_factory) -> None:
    directory.add(goal_factory("g1"))
    _profile(store, "g1", RiskTier.AGGRESSIVE)
    user_registry = RiskProfileRegistry(store)

    def user_edit(goal):
        user_registry.update(goal.goal_id, min_success_probability=0.5)

    controller, _ = build({"g1": 0.60}, on_simulate=user_edit, workers=1)

    evaluation = controller.sweep().evaluations[0]
    assert evaluation.outcome is EvaluationOutcome.FAILED
    assert evaluation.error.startswith(StaleProfileError.__name__)
    profile = store.get_profile("g1")
    assert profile.risk_tier is RiskTier.AGGRESSIVE
    assert profile.min_success_probability == pytest.approx(0.5)
    assert profile.version == 1
    assert store.list_rebalance_events("g1") == []
    assert notifier.sent == []


def test_goal_timeout_fails_only_that_goal(build, store, directory, goal_factory) -> None:
    for goal_id in ("g1", "g2", "g3"):
        directory.add(goal_factory(goal_id))
        _profile(store, goal_id, RiskTier.AGGRESSIVE)
    controller, engine = build(
        {"g1": 0.9, "g3": 0.3}, timing_out={"g2"}, goal_timeout=0.5
    )

    report = controller.sweep()
    outcomes = {item.goal_id: item.outcome for item in report.evaluations}
    assert outcomes == {
        "g1": EvaluationOutcome.NO_ACTION,
        "g2": EvaluationOutcome.FAILED,
        "g3": EvaluationOutcome.DOWNGRADE,
    }
    assert report.failures[0].error.startswith(SimulationTimeoutError.__name__)
    assert set(engine.timeouts) == {0.5}
    assert store.get_profile("g2").risk_tier is RiskTier.AGGRESSIVE

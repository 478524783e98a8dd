from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from backend import crud, database
from goalsim.engine.errors import GoalNotFoundError
from goalsim.engine.goals.models import (
    Notification,
    RebalanceEvent,
    RiskProfile,
    RiskTier,
    SimulationResult,
)

FIXED_NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def _result(goal_id: str = "g1", user_id: str = "u1", *, at=FIXED_NOW, probability: float = 0.5):
    return SimulationResult(
        goal_id=goal_id,
        user_id=user_id,
        iterations=100,
        p1=1.0,
        p10=2.0,
        p50=3.0,
        p90=4.0,
        success_probability=probability,
        expected_shortfall=10.0,
        risk_tier=RiskTier.MODERATE,
        horizon_months=36,
        target_amount=10_000.0,
        created_at=at,
    )


def test_create_and_list_goals(db_session, seed_goal):
    seed_goal("g2", user_id="u2", target_date=FIXED_NOW.date() + timedelta(days=400))
    seed_goal("g1")

    goals = crud.list_goals(db_session)
    assert [goal.id for goal in goals] == ["g2", "g1"]
    assert [goal.id for goal in crud.list_goals(db_session, user_id="u1")] == ["g1"]
    assert crud.get_goal(db_session, "g1").status == "active"
    with pytest.raises(crud.EntityNotFoundError):
        crud.get_goal(db_session, "missing")


def test_duplicate_goal_id_conflicts(seed_goal):
    seed_goal("g1")
    with pytest.raises(crud.EntityConflictError):
        seed_goal("g1")


def test_goal_directory_lists_active_goals(session_factory, seed_goal):
    seed_goal("g1")
    seed_goal("g2", status="completed")
    directory = crud.SqlGoalDirectory(session_factory)

    active = directory.list_active_goals()
    assert [goal.goal_id for goal in active] == ["g1"]
    assert active[0].target_amount == pytest.approx(10_000.0)
    assert directory.get_goal("g2").status == "completed"
    with pytest.raises(GoalNotFoundError):
        directory.get_goal("missing")


def test_profile_create_is_idempotent(session_factory, seed_goal):
    seed_goal("g1")
    store = crud.SqlResultStore(session_factory)
    first = store.create_profile(RiskProfile(goal_id="g1", risk_tier=RiskTier.AGGRESSIVE))
    second = store.create_profile(RiskProfile(goal_id="g1", risk_tier=RiskTier.CONSERVATIVE))
    assert first == second
    assert store.get_profile("g1").risk_tier is RiskTier.AGGRESSIVE
    assert store.get_profile("missing") is None


def test_profile_compare_and_set(session_factory, seed_goal):
    seed_goal("g1")
    store = crud.SqlResultStore(session_factory)
    store.create_profile(RiskProfile(goal_id="g1", risk_tier=RiskTier.AGGRESSIVE))

    updated = store.compare_and_set_profile("g1", 0, risk_tier=RiskTier.MODERATE)
    assert updated is not None
    assert updated.risk_tier is RiskTier.MODERATE
    assert updated.version == 1
    assert store.compare_and_set_profile("g1", 0, risk_tier=RiskTier.CONSERVATIVE) is None
    assert store.get_profile("g1").risk_tier is RiskTier.MODERATE


def test_touch_profile_keeps_utc(session_factory, seed_goal):
    seed_goal("g1")
    store = crud.SqlResultStore(session_factory)
    store.create_profile(RiskProfile(goal_id="g1"))
    store.touch_profile("g1", FIXED_NOW)

    profile = store.get_profile("g1")
    assert profile.last_simulation_at == FIXED_NOW
    assert profile.last_simulation_at.tzinfo is not None
    assert profile.version == 0


def test_results_are_listed_newest_first(session_factory, seed_goal):
    seed_goal("g1")
    store = crud.SqlResultStore(session_factory)
    older = store.append_result(_result(at=FIXED_NOW - timedelta(days=7), probability=0.4))
    newer = store.append_result(_result(probability=0.6))

    assert older.result_id is not None
    assert newer.created_at == FIXED_NOW
    history = store.list_results("g1")
    assert [item.success_probability for item in history] == [0.6, 0.4]
    assert len(store.list_results("g1", limit=1)) == 1
    assert store.latest_result_for_user("u1").result_id == newer.result_id
    assert store.latest_result_for_user("nobody") is None


def test_rebalance_event_unique_per_window(session_factory, seed_goal):
    seed_goal("g1")
    store = crud.SqlResultStore(session_factory)
    event = RebalanceEvent(
        goal_id="g1",
        previous_tier=RiskTier.AGGRESSIVE,
        new_tier=RiskTier.MODERATE,
        success_probability=0.55,
        window="2026-W42",
        created_at=FIXED_NOW,
    )
    stored = store.append_rebalance_event(event)
    assert stored == event
    assert store.has_rebalance_event("g1", "2026-W42")
    assert not store.has_rebalance_event("g1", "2026-W43")

    with pytest.raises(crud.EntityConflictError):
        store.append_rebalance_event(event)
    assert len(store.list_rebalance_events("g1")) == 1


def test_downgrade_with_event_is_atomic(session_factory, seed_goal):
    seed_goal("g1")
    store = crud.SqlResultStore(session_factory)
    store.create_profile(RiskProfile(goal_id="g1", risk_tier=RiskTier.AGGRESSIVE))
    event = RebalanceEvent(
        goal_id="g1",
        previous_tier=RiskTier.AGGRESSIVE,
        new_tier=RiskTier.MODERATE,
        success_probability=0.55,
        window="2026-W42",
        created_at=FIXED_NOW,
    )

    updated = store.downgrade_with_event("g1", 0, event, risk_tier=RiskTier.MODERATE)
    assert updated.risk_tier is RiskTier.MODERATE
    assert updated.version == 1
    assert store.list_rebalance_events("g1") == [event]

    # The duplicate window insert fails and takes the profile update with it.
    assert store.downgrade_with_event("g1", 1, event, risk_tier=RiskTier.CONSERVATIVE) is None
    profile = store.get_profile("g1")
    assert profile.risk_tier is RiskTier.MODERATE
    assert profile.version == 1

    # A stale version writes neither the profile nor the event.
    later = replace(event, window="2026-W43")
    assert store.downgrade_with_event("g1", 0, later, risk_tier=RiskTier.CONSERVATIVE) is None
    assert not store.has_rebalance_event("g1", "2026-W43")


def test_notifier_persists_notifications(session_factory, db_session):
    notifier = crud.SqlNotifier(session_factory)
    notifier.send(
        "u1",
        Notification(
            title="URGENT: Goal Probability Low",
            message="Probability fell to 40%",
            kind="risk_warning",
            metadata={"goal_id": "g1", "success_probability": 0.4},
        ),
    )

    stored = crud.list_notifications(db_session, "u1")
    assert len(stored) == 1
    assert stored[0].kind == "risk_warning"
    assert stored[0].payload == {"goal_id": "g1", "success_probability": 0.4}
    assert crud.list_notifications(db_session, "u2") == []


def test_database_url_follows_goalsim_settings(tmp_path, monkeypatch):
    monkeypatch.delenv("GOALSIM_DATABASE_URL", raising=False)
    config = tmp_path / "configs" / "goalsim.yml"
    config.parent.mkdir()
    config.write_text("database:\n  url: sqlite:///shared.db\n", encoding="utf-8")
    assert database.resolve_database_url() == "sqlite:///shared.db"

    monkeypatch.setenv("GOALSIM_DATABASE_URL", "sqlite:///override.db")
    assert database.resolve_database_url() == "sqlite:///override.db"

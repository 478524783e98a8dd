"""Collaborator interfaces and in-memory implementations.

The simulator, the registry and the controller only talk to the outside world
through the protocols declared here: a goal directory, a result store and a
notifier. The SQL-backed implementations live in :mod:`backend.crud`; the
in-memory variants below back the CLI demo mode and the unit tests.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import replace
from datetime import UTC, datetime
from typing import Any, Protocol

from goalsim.engine.errors import GoalNotFoundError

from .models import Goal, Notification, RebalanceEvent, RiskProfile, SimulationResult

__all__ = [
    "Clock",
    "utc_now",
    "GoalDirectory",
    "Notifier",
    "ResultStore",
    "InMemoryGoalDirectory",
    "InMemoryResultStore",
    "RecordingNotifier",
]

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock returning an aware UTC timestamp."""

    return datetime.now(tz=UTC)


class GoalDirectory(Protocol):
    def list_active_goals(self) -> Sequence[Goal]:
        """Return a point-in-time snapshot of goals with ``active`` status."""

    def get_goal(self, goal_id: str) -> Goal:
        """Return the goal or raise :class:`GoalNotFoundError`."""


class Notifier(Protocol):
    def send(self, user_id: str, notification: Notification) -> None:
        """Deliver ``notification`` to ``user_id``."""


class ResultStore(Protocol):
    def get_profile(self, goal_id: str) -> RiskProfile | None: ...

    def create_profile(self, profile: RiskProfile) -> RiskProfile:
        """Insert ``profile`` unless one exists; return the stored profile."""

    def compare_and_set_profile(
        self, goal_id: str, expected_version: int, **changes: Any
    ) -> RiskProfile | None:
        """Apply ``changes`` only if the stored version equals ``expected_version``.

        The stored version is incremented on success. ``None`` signals that
        another writer got there first.
        """

    def downgrade_with_event(
        self, goal_id: str, expected_version: int, event: RebalanceEvent, **changes: Any
    ) -> RiskProfile | None:
        """Apply ``changes`` and record ``event`` as one atomic write.

        Returns ``None`` and writes nothing when the version moved or an event
        already exists for ``(event.goal_id, event.window)``.
        """

    def touch_profile(self, goal_id: str, at: datetime) -> None:
        """Set ``last_simulation_at`` without bumping the version."""

    def append_result(self, result: SimulationResult) -> SimulationResult: ...

    def list_results(self, goal_id: str, limit: int | None = None) -> list[SimulationResult]:
        """Return the goal's results, newest first."""

    def latest_result_for_user(self, user_id: str) -> SimulationResult | None: ...

    def append_rebalance_event(self, event: RebalanceEvent) -> RebalanceEvent: ...

    def has_rebalance_event(self, goal_id: str, window: str) -> bool: ...

    def list_rebalance_events(self, goal_id: str) -> list[RebalanceEvent]: ...


class InMemoryGoalDirectory:
    """Goal directory backed by a dictionary."""

    def __init__(self, goals: Iterable[Goal] = ()) -> None:
        self._goals: dict[str, Goal] = {goal.goal_id: goal for goal in goals}

    def add(self, goal: Goal) -> None:
        self._goals[goal.goal_id] = goal

    def list_active_goals(self) -> list[Goal]:
        return [goal for goal in self._goals.values() if goal.status == "active"]

    def get_goal(self, goal_id: str) -> Goal:
        try:
            return self._goals[goal_id]
        except KeyError as exc:
            raise GoalNotFoundError(f"Goal {goal_id} not found") from exc


class InMemoryResultStore:
    """Thread-safe result store keeping everything in process memory."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._profiles: dict[str, RiskProfile] = {}
        self._results: list[SimulationResult] = []
        self._events: list[RebalanceEvent] = []

    def get_profile(self, goal_id: str) -> RiskProfile | None:
        with self._lock:
            return self._profiles.get(goal_id)

    def create_profile(self, profile: RiskProfile) -> RiskProfile:
        with self._lock:
            return self._profiles.setdefault(profile.goal_id, profile)

    def compare_and_set_profile(
        self, goal_id: str, expected_version: int, **changes: Any
    ) -> RiskProfile | None:
        with self._lock:
            current = self._profiles.get(goal_id)
            if current is None or current.version != expected_version:
                return None
            updated = replace(current, version=current.version + 1, **changes)
            self._profiles[goal_id] = updated
            return updated

    def downgrade_with_event(
        self, goal_id: str, expected_version: int, event: RebalanceEvent, **changes: Any
    ) -> RiskProfile | None:
        with self._lock:
            current = self._profiles.get(goal_id)
            if current is None or current.version != expected_version:
                return None
            if self.has_rebalance_event(event.goal_id, event.window):
                return None
            # The profile is only replaced once the event is stored.
            self.append_rebalance_event(event)
            updated = replace(current, version=current.version + 1, **changes)
            self._profiles[goal_id] = updated
            return updated

    def touch_profile(self, goal_id: str, at: datetime) -> None:
        with self._lock:
            current = self._profiles.get(goal_id)
            if current is not None:
                self._profiles[goal_id] = replace(current, last_simulation_at=at)

    def append_result(self, result: SimulationResult) -> SimulationResult:
        with self._lock:
            stored = replace(result, result_id=len(self._results) + 1)
            self._results.append(stored)
            return stored

    def list_results(self, goal_id: str, limit: int | None = None) -> list[SimulationResult]:
        with self._lock:
            matches = [item for item in reversed(self._results) if item.goal_id == goal_id]
        return matches if limit is None else matches[:limit]

    def latest_result_for_user(self, user_id: str) -> SimulationResult | None:
        with self._lock:
            for item in reversed(self._results):
                if item.user_id == user_id:
                    return item
        return None

    def append_rebalance_event(self, event: RebalanceEvent) -> RebalanceEvent:
        with self._lock:
            self._events.append(event)
        return event

    def has_rebalance_event(self, goal_id: str, window: str) -> bool:
        with self._lock:
            return any(e.goal_id == goal_id and e.window == window for e in self._events)

    def list_rebalance_events(self, goal_id: str) -> list[RebalanceEvent]:
        with self._lock:
            return [event for event in self._events if event.goal_id == goal_id]


class RecordingNotifier:
    """Notifier that keeps every delivery in memory."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, Notification]] = []

    def send(self, user_id: str, notification: Notification) -> None:
        self.sent.append((user_id, notification))

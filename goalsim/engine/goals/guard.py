"""Admission control for user-triggered simulations.

Ad-hoc requests are capped in size and throttled per user before the engine
draws a single path. The cooldown lookup is an availability trade-off: with
``fail_open=True`` a failing lookup lets the request through and logs a
warning instead of blocking legitimate users.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta

from goalsim.engine.errors import (
    ITERATIONS_INVALID,
    ITERATIONS_TOO_HIGH,
    RATE_LIMITED,
    GuardUnavailableError,
    SimulationRejected,
)
from goalsim.engine.logging import record_metrics, setup_logger

from .mc import DEFAULT_MAX_ITERATIONS, SimulationEngine
from .models import Goal, SimulationResult
from .profiles import RiskProfileRegistry
from .stores import Clock, ResultStore, utc_now

__all__ = [
    "DEFAULT_COOLDOWN_SECONDS",
    "DEFAULT_REQUEST_ITERATIONS",
    "SimulationRequestGuard",
]

LOG = setup_logger(__name__)

DEFAULT_REQUEST_ITERATIONS = 1_000
DEFAULT_COOLDOWN_SECONDS = 60.0


class SimulationRequestGuard:
    """Wrap :meth:`SimulationEngine.simulate` for externally triggered calls.

    Attributes:
      fail_open: Whether an internal error of the cooldown check admits the
        request (``True``) or rejects it with :class:`GuardUnavailableError`.
    """

    def __init__(
        self,
        engine: SimulationEngine,
        registry: RiskProfileRegistry,
        store: ResultStore,
        *,
        clock: Clock = utc_now,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        default_iterations: int = DEFAULT_REQUEST_ITERATIONS,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        fail_open: bool = True,
    ) -> None:
        self._engine = engine
        self._registry = registry
        self._store = store
        self._clock = clock
        self.max_iterations = int(max_iterations)
        self.default_iterations = int(default_iterations)
        self.cooldown = timedelta(seconds=float(cooldown_seconds))
        self.fail_open = bool(fail_open)
        self._admitted: dict[str, datetime] = {}
        self._admit_lock = threading.Lock()

    def check_iterations(self, iterations: int | None) -> int:
        """Resolve the requested iteration count or reject it."""

        resolved = self.default_iterations if iterations is None else iterations
        # JSON clients may send 500.0 for 500.
        if isinstance(resolved, float) and resolved.is_integer():
            resolved = int(resolved)
        if isinstance(resolved, bool) or not isinstance(resolved, int):
            raise SimulationRejected(ITERATIONS_INVALID, "iterations must be an integer")
        if resolved > self.max_iterations:
            raise SimulationRejected(
                ITERATIONS_TOO_HIGH,
                f"iterations must not exceed {self.max_iterations} (got {resolved})",
            )
        if resolved < 1:
            raise SimulationRejected(ITERATIONS_INVALID, "iterations must be at least 1")
        return resolved

    def _latest_for_user(self, user_id: str) -> datetime | None:
        try:
            latest: SimulationResult | None = self._store.latest_result_for_user(user_id)
        except Exception as exc:
            if not self.fail_open:
                raise GuardUnavailableError(f"cooldown check failed: {exc}") from exc
            LOG.warning(
                "cooldown check failed for user=%s, admitting request: %s",
                user_id,
                exc,
                extra={"user_id": user_id, "event": "GUARD_FAIL_OPEN"},
            )
            record_metrics("guard_fail_open", 1.0, {"user_id": user_id})
            return None
        return latest.created_at if latest is not None else None

    def admit(self, user_id: str, iterations: int | None = None) -> int:
        """Run every check and reserve the user's cooldown slot.

        Returns:
          The iteration count to simulate.

        Raises:
          SimulationRejected: With ``ITERATIONS_TOO_HIGH``, ``ITERATIONS_INVALID``
            or ``RATE_LIMITED``.
          GuardUnavailableError: If the cooldown check fails and ``fail_open``
            is disabled.
        """

        resolved, _, _ = self._reserve(user_id, iterations)
        return resolved

    def _reserve(
        self, user_id: str, iterations: int | None
    ) -> tuple[int, datetime, datetime | None]:
        resolved = self.check_iterations(iterations)
        last_stored = self._latest_for_user(user_id)
        with self._admit_lock:
            now = self._clock()
            candidates = [ts for ts in (last_stored, self._admitted.get(user_id)) if ts is not None]
            if candidates:
                elapsed = now - max(candidates)
                if elapsed < self.cooldown:
                    retry_after = (self.cooldown - elapsed).total_seconds()
                    LOG.info(
                        "rate limited user=%s retry_after=%.1fs",
                        user_id,
                        retry_after,
                        extra={"user_id": user_id, "event": RATE_LIMITED},
                    )
                    raise SimulationRejected(
                        RATE_LIMITED,
                        f"a simulation was run less than {self.cooldown.total_seconds():.0f}s ago",
                        retry_after=retry_after,
                    )
            previous = self._admitted.get(user_id)
            self._admitted[user_id] = now
        return resolved, now, previous

    def _release(self, user_id: str, reserved_at: datetime, previous: datetime | None) -> None:
        """Undo a reservation whose simulation produced no result."""

        with self._admit_lock:
            if self._admitted.get(user_id) != reserved_at:
                return
            if previous is None:
                del self._admitted[user_id]
            else:
                self._admitted[user_id] = previous

    def run(self, user_id: str, goal: Goal, iterations: int | None = None) -> SimulationResult:
        """Admit the request, resolve the goal's tier and run the engine."""

        resolved, reserved_at, previous = self._reserve(user_id, iterations)
        try:
            profile = self._registry.get_or_create(goal.goal_id)
            return self._engine.simulate(goal, profile.risk_tier, resolved)
        except Exception:
            self._release(user_id, reserved_at, previous)
            raise

"""Per-goal risk profile registry.

The registry is the only component that writes risk tiers. Every write is a
compare-and-swap on the profile version, so a scheduled downgrade racing with
a user edit (or with a second scheduler) cannot overwrite the other writer.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from goalsim.engine.errors import InvalidSimulationInput, StaleProfileError
from goalsim.engine.logging import setup_logger

from .models import (
    DEFAULT_MIN_SUCCESS_PROBABILITY,
    RebalanceEvent,
    RiskProfile,
    RiskTier,
    lower_tier,
)
from .stores import ResultStore, utc_now

__all__ = ["RiskProfileRegistry"]

LOG = setup_logger(__name__)


class RiskProfileRegistry:
    """Own the risk tier, auto-rebalance flag and threshold of each goal."""

    def __init__(
        self,
        store: ResultStore,
        *,
        default_tier: RiskTier = RiskTier.MODERATE,
        default_min_success_probability: float = DEFAULT_MIN_SUCCESS_PROBABILITY,
    ) -> None:
        self._store = store
        self._default_tier = RiskTier(default_tier)
        self._default_threshold = float(default_min_success_probability)

    def get(self, goal_id: str) -> RiskProfile | None:
        return self._store.get_profile(goal_id)

    def get_or_create(self, goal_id: str) -> RiskProfile:
        """Return the goal's profile, creating the default one when absent."""

        profile = self._store.get_profile(goal_id)
        if profile is not None:
            return profile
        created = self._store.create_profile(
            RiskProfile(
                goal_id=goal_id,
                risk_tier=self._default_tier,
                auto_rebalance=False,
                min_success_probability=self._default_threshold,
            )
        )
        LOG.debug("created risk profile goal=%s tier=%s", goal_id, created.risk_tier.value)
        return created

    def downgrade(
        self,
        goal_id: str,
        expected_tier: RiskTier | str | None = None,
        *,
        expected_version: int | None = None,
        window: str | None = None,
        success_probability: float = 0.0,
        at: datetime | None = None,
    ) -> RiskProfile | None:
        """Move the goal one tier down.

        Args:
          goal_id: Goal whose profile is downgraded.
          expected_tier: Tier the caller based its decision on. When given, a
            profile whose tier no longer matches is treated as a lost race.
          expected_version: Profile version the caller read. The swap is made
            against it, so any write since that read loses the race.
          window: Scheduling window of the decision. When given, the tier change
            and its :class:`RebalanceEvent` are stored atomically, and a window
            that already holds an event counts as a lost race.
          success_probability: Probability recorded on the event.
          at: Timestamp of the event; defaults to now.

        Returns:
          The updated profile, or ``None`` when the profile is already at the
          conservative floor (in which case nothing is written).

        Raises:
          StaleProfileError: If the tier differs from ``expected_tier`` or the
            compare-and-swap loses against a concurrent writer.
        """

        profile = self.get_or_create(goal_id)
        if expected_tier is not None and profile.risk_tier != RiskTier(expected_tier):
            raise StaleProfileError(goal_id, RiskTier(expected_tier).value, profile.risk_tier.value)
        target = lower_tier(profile.risk_tier)
        if target is None:
            return None
        version = profile.version if expected_version is None else int(expected_version)
        if window is None:
            updated = self._store.compare_and_set_profile(goal_id, version, risk_tier=target)
        else:
            event = RebalanceEvent(
                goal_id=goal_id,
                previous_tier=profile.risk_tier,
                new_tier=target,
                success_probability=float(success_probability),
                window=window,
                created_at=at if at is not None else utc_now(),
            )
            updated = self._store.downgrade_with_event(goal_id, version, event, risk_tier=target)
        if updated is None:
            current = self._store.get_profile(goal_id)
            if window is not None and self._store.has_rebalance_event(goal_id, window):
                actual = f"rebalance already recorded in {window}"
            elif current is not None:
                actual = f"{current.risk_tier.value} at version {current.version}"
            else:
                actual = "missing"
            raise StaleProfileError(
                goal_id, f"{profile.risk_tier.value} at version {version}", actual
            )
        LOG.info(
            "downgraded goal=%s %s -> %s",
            goal_id,
            profile.risk_tier.value,
            target.value,
            extra={"goal_id": goal_id, "event": "RISK_DOWNGRADE"},
        )
        return updated

    def update(
        self,
        goal_id: str,
        *,
        risk_tier: RiskTier | str | None = None,
        auto_rebalance: bool | None = None,
        min_success_probability: float | None = None,
        expected_version: int | None = None,
    ) -> RiskProfile:
        """Apply a user edit to the profile.

        Raises:
          InvalidSimulationInput: If the threshold lies outside ``[0, 1]``.
          StaleProfileError: If ``expected_version`` is given and outdated, or
            a concurrent write lands between read and swap.
        """

        changes: dict[str, Any] = {}
        if risk_tier is not None:
            changes["risk_tier"] = RiskTier(risk_tier)
        if auto_rebalance is not None:
            changes["auto_rebalance"] = bool(auto_rebalance)
        if min_success_probability is not None:
            threshold = float(min_success_probability)
            if not 0.0 <= threshold <= 1.0:
                raise InvalidSimulationInput("min_success_probability", "must be within [0, 1]")
            changes["min_success_probability"] = threshold

        profile = self.get_or_create(goal_id)
        version = profile.version if expected_version is None else int(expected_version)
        if not changes:
            return profile
        updated = self._store.compare_and_set_profile(goal_id, version, **changes)
        if updated is None:
            current = self._store.get_profile(goal_id)
            actual = f"version {current.version}" if current is not None else "missing"
            raise StaleProfileError(goal_id, f"version {version}", actual)
        return updated

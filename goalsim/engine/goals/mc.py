"""Monte Carlo goal simulation engine.

This module projects whether a savings goal reaches its target. Each simulated
path walks the goal's horizon in monthly steps under a geometric Brownian
motion whose drift and volatility come from the goal's risk tier; the fixed
monthly contribution is added after the multiplicative growth of each step.
Final balances are reduced to percentiles, a success probability and the
expected shortfall of the worst 5% of paths.
"""

from __future__ import annotations

import math
import time
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime, time as dt_time
from typing import Final

import numpy as np

from goalsim.engine.errors import (
    InvalidSimulationInput,
    NumericDegeneracyError,
    SimulationTimeoutError,
)
from goalsim.engine.logging import setup_logger
from goalsim.engine.utils.rand import BoxMullerGenerator, RandomPathGenerator

from .models import DEFAULT_TIER_PARAMETERS, Goal, RiskTier, SimulationResult, TierParameters
from .stores import Clock, ResultStore, utc_now

__all__ = [
    "DAYS_PER_MONTH",
    "DEFAULT_MAX_ITERATIONS",
    "PERCENTILES",
    "STRESS_REGIMES",
    "TAIL_FRACTION",
    "PathStatistics",
    "SimulationEngine",
    "horizon_months",
    "simulate_final_balances",
    "stressed_parameters",
    "summarise_final_balances",
]

LOG = setup_logger(__name__)

DAYS_PER_MONTH: Final[float] = 30.44
DEFAULT_MAX_ITERATIONS: Final[int] = 10_000
PERCENTILES: Final[tuple[float, float, float, float]] = (0.01, 0.10, 0.50, 0.90)
TAIL_FRACTION: Final[float] = 0.05
STRESS_ITERATIONS: Final[int] = 5_000

# Multipliers applied to (mean, volatility) of the tier under stress.
STRESS_REGIMES: Final[dict[str, tuple[float, float]]] = {
    "BULL": (1.2, 0.8),
    "BEAR": (-0.5, 1.5),
    "STAGNANT": (0.2, 0.5),
}


@dataclass(frozen=True)
class PathStatistics:
    """Reduction of the simulated final balances.

    Attributes:
      iterations: Number of paths the statistics were computed from.
      p1: 1st percentile of final balances.
      p10: 10th percentile of final balances.
      p50: Median final balance.
      p90: 90th percentile of final balances.
      success_probability: Share of paths ending at or above the target.
      expected_shortfall: Target minus the mean of the worst 5% of paths,
        floored at zero.
    """

    iterations: int
    p1: float
    p10: float
    p50: float
    p90: float
    success_probability: float
    expected_shortfall: float


def horizon_months(target_date: date | datetime, now: datetime) -> int:
    """Return the number of monthly steps until ``target_date``.

    Args:
      target_date: Goal deadline. Plain dates are read as midnight and naive
        datetimes inherit the timezone of ``now``.
      now: Reference timestamp.

    Returns:
      ``ceil(days / 30.44)``, never less than one month.
    """

    if isinstance(target_date, datetime):
        deadline = target_date
    else:
        deadline = datetime.combine(target_date, dt_time.min)
    if deadline.tzinfo is None and now.tzinfo is not None:
        deadline = deadline.replace(tzinfo=now.tzinfo)
    elif deadline.tzinfo is not None and now.tzinfo is None:
        deadline = deadline.replace(tzinfo=None)
    days = (deadline - now).total_seconds() / 86_400.0
    return max(1, math.ceil(days / DAYS_PER_MONTH))


def stressed_parameters(parameters: TierParameters, regime: str) -> TierParameters:
    """Apply a named market regime to the tier parameters.

    Raises:
      InvalidSimulationInput: If ``regime`` is unknown.
    """

    try:
        mean_mult, vol_mult = STRESS_REGIMES[regime.upper()]
    except KeyError as exc:
        raise InvalidSimulationInput(
            "regime", f"unknown regime {regime!r}; expected one of {sorted(STRESS_REGIMES)}"
        ) from exc
    return TierParameters(
        mean_return=parameters.mean_return * mean_mult,
        volatility=parameters.volatility * vol_mult,
    )


def _check_parameters(parameters: TierParameters) -> None:
    if not (math.isfinite(parameters.mean_return) and math.isfinite(parameters.volatility)):
        raise NumericDegeneracyError(f"non-finite tier parameters: {parameters}")
    if parameters.volatility < 0.0:
        raise NumericDegeneracyError(f"negative volatility: {parameters.volatility}")


def _simulate_chunk(
    start: float,
    contribution: float,
    months: int,
    drift: float,
    diffusion: float,
    size: int,
    generator: RandomPathGenerator,
    deadline: float | None,
) -> np.ndarray:
    """Walk ``size`` independent paths for ``months`` steps."""

    balances = np.full(size, start, dtype="float64")
    for _ in range(months):
        if deadline is not None and time.monotonic() > deadline:
            raise SimulationTimeoutError(f"simulation exceeded its deadline after {months} months")
        shocks = generator.standard_normal(size)
        balances *= np.exp(drift + diffusion * shocks)
        balances += contribution
    return balances


def simulate_final_balances(
    start: float,
    monthly_contribution: float,
    months: int,
    parameters: TierParameters,
    iterations: int,
    generator: RandomPathGenerator,
    *,
    workers: int = 1,
    deadline: float | None = None,
) -> np.ndarray:
    """Simulate ``iterations`` GBM paths and return their final balances.

    Paths are split into at most ``workers`` chunks. Each chunk draws from its
    own child generator spawned from ``generator``, so the output depends only
    on the generator state and the chunk count.

    Args:
      start: Balance at month zero.
      monthly_contribution: Amount added after growth at every step.
      months: Number of monthly steps (values below one are floored to one).
      parameters: Annualised mean return and volatility.
      iterations: Number of independent paths.
      generator: Source of standard normal shocks.
      workers: Maximum number of threads used for the chunks.
      deadline: Optional :func:`time.monotonic` value after which the walk
        aborts with :class:`SimulationTimeoutError`.

    Returns:
      Array of shape ``(iterations,)`` with unsorted final balances.
    """

    _check_parameters(parameters)
    steps = max(1, int(months))
    drift = (parameters.mean_return - 0.5 * parameters.volatility**2) / 12.0
    diffusion = parameters.volatility * math.sqrt(1.0 / 12.0)

    chunk_count = max(1, min(int(workers), iterations))
    sizes = [len(part) for part in np.array_split(np.arange(iterations), chunk_count)]
    children = generator.spawn(chunk_count)

    def run(index: int) -> np.ndarray:
        return _simulate_chunk(
            float(start),
            float(monthly_contribution),
            steps,
            drift,
            diffusion,
            sizes[index],
            children[index],
            deadline,
        )

    if chunk_count == 1:
        return run(0)
    with ThreadPoolExecutor(max_workers=chunk_count) as pool:
        chunks = list(pool.map(run, range(chunk_count)))
    return np.concatenate(chunks)


def summarise_final_balances(final_balances: np.ndarray, target: float) -> PathStatistics:
    """Reduce final balances to percentiles and tail statistics.

    Percentiles are read at sorted index ``floor(n * q)``. The tail used for
    the expected shortfall holds ``floor(n * 0.05)`` paths, at least one.

    Raises:
      NumericDegeneracyError: If the balances or the statistics are not finite.
    """

    ordered = np.sort(np.asarray(final_balances, dtype="float64"))
    count = int(ordered.size)
    if count == 0:
        raise NumericDegeneracyError("no simulated paths to summarise")
    if not np.all(np.isfinite(ordered)):
        raise NumericDegeneracyError("simulation produced non-finite final balances")

    def at(quantile: float) -> float:
        return float(ordered[min(count - 1, int(math.floor(count * quantile)))])

    p1, p10, p50, p90 = (at(q) for q in PERCENTILES)
    success = float(np.count_nonzero(ordered >= target)) / count
    tail_size = max(1, int(math.floor(count * TAIL_FRACTION)))
    shortfall = max(0.0, float(target) - float(np.mean(ordered[:tail_size])))

    stats = PathStatistics(
        iterations=count,
        p1=p1,
        p10=p10,
        p50=p50,
        p90=p90,
        success_probability=success,
        expected_shortfall=shortfall,
    )
    if not all(
        math.isfinite(value)
        for value in (p1, p10, p50, p90, success, shortfall)
    ):
        raise NumericDegeneracyError(f"non-finite simulation statistics: {stats}")
    return stats


def _already_met(current: float, iterations: int) -> PathStatistics:
    return PathStatistics(
        iterations=iterations,
        p1=current,
        p10=current,
        p50=current,
        p90=current,
        success_probability=1.0,
        expected_shortfall=0.0,
    )


class SimulationEngine:
    """Run and persist Monte Carlo projections for goals.

    The engine is an explicitly constructed service: the result store, the
    random generator and the clock are injected so tests can pin all three.
    """

    def __init__(
        self,
        store: ResultStore,
        *,
        generator: RandomPathGenerator | None = None,
        clock: Clock = utc_now,
        tier_parameters: Mapping[RiskTier, TierParameters] | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        path_workers: int = 1,
    ) -> None:
        self._store = store
        self._generator = generator if generator is not None else BoxMullerGenerator()
        self._clock = clock
        self._tiers = dict(tier_parameters or DEFAULT_TIER_PARAMETERS)
        self._max_iterations = int(max_iterations)
        self._path_workers = max(1, int(path_workers))

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    def parameters_for(self, tier: RiskTier | str) -> TierParameters:
        return self._tiers[RiskTier(tier)]

    def _validate(self, goal: Goal, iterations: int) -> None:
        if isinstance(iterations, bool) or not isinstance(iterations, int | np.integer):
            raise InvalidSimulationInput("iterations", "must be an integer")
        if iterations < 1:
            raise InvalidSimulationInput("iterations", "must be >= 1")
        if iterations > self._max_iterations:
            raise InvalidSimulationInput("iterations", f"must be <= {self._max_iterations}")
        for name in ("target_amount", "current_amount", "monthly_contribution"):
            value = float(getattr(goal, name))
            if not math.isfinite(value):
                raise InvalidSimulationInput(name, "must be finite")
            if value < 0.0:
                raise InvalidSimulationInput(name, "must be non-negative")

    def project(
        self,
        goal: Goal,
        risk_tier: RiskTier | str,
        iterations: int,
        *,
        parameters: TierParameters | None = None,
        timeout: float | None = None,
        generator: RandomPathGenerator | None = None,
    ) -> tuple[PathStatistics, int]:
        """Compute statistics for ``goal`` without persisting anything.

        Args:
          goal: Goal to project.
          risk_tier: Tier selecting the return model.
          iterations: Number of paths.
          parameters: Optional override of the tier parameters (stress tests).
          timeout: Optional wall-clock budget in seconds.
          generator: Optional generator; a child of the engine generator is
            used otherwise.

        Returns:
          Tuple ``(statistics, horizon_months)``.
        """

        self._validate(goal, iterations)
        months = horizon_months(goal.target_date, self._clock())
        target = float(goal.target_amount)
        current = float(goal.current_amount)
        if target <= 0.0 or current >= target:
            return _already_met(current, iterations), months

        model = parameters if parameters is not None else self.parameters_for(risk_tier)
        source = generator if generator is not None else self._generator.spawn(1)[0]
        deadline = time.monotonic() + timeout if timeout is not None else None
        finals = simulate_final_balances(
            current,
            float(goal.monthly_contribution),
            months,
            model,
            iterations,
            source,
            workers=self._path_workers,
            deadline=deadline,
        )
        return summarise_final_balances(finals, target), months

    def simulate(
        self,
        goal: Goal,
        risk_tier: RiskTier | str,
        iterations: int,
        *,
        timeout: float | None = None,
        generator: RandomPathGenerator | None = None,
    ) -> SimulationResult:
        """Run the simulation, persist the result and stamp the risk profile.

        Raises:
          InvalidSimulationInput: For out-of-range iterations or amounts.
          NumericDegeneracyError: If the projection is not finite.
          SimulationTimeoutError: If ``timeout`` elapses mid-walk.
        """

        tier = RiskTier(risk_tier)
        started = time.perf_counter()
        stats, months = self.project(
            goal, tier, iterations, timeout=timeout, generator=generator
        )
        now = self._clock()
        result = SimulationResult(
            goal_id=goal.goal_id,
            user_id=goal.user_id,
            iterations=int(iterations),
            p1=stats.p1,
            p10=stats.p10,
            p50=stats.p50,
            p90=stats.p90,
            success_probability=stats.success_probability,
            expected_shortfall=stats.expected_shortfall,
            risk_tier=tier,
            horizon_months=months,
            target_amount=float(goal.target_amount),
            created_at=now,
        )
        stored = self._store.append_result(result)
        self._store.touch_profile(goal.goal_id, now)
        LOG.info(
            "MONTE_CARLO_SIMULATION goal=%s tier=%s iterations=%d p=%.4f p50=%.2f",
            goal.goal_id,
            tier.value,
            iterations,
            stats.success_probability,
            stats.p50,
            extra={
                "event": "MONTE_CARLO_SIMULATION",
                "goal_id": goal.goal_id,
                "user_id": goal.user_id,
                "iterations": iterations,
                "success_probability": stats.success_probability,
                "process_time_ms": (time.perf_counter() - started) * 1_000.0,
            },
        )
        return stored

    def run_stress_test(
        self,
        goal: Goal,
        risk_tier: RiskTier | str,
        regime: str = "BEAR",
        iterations: int = STRESS_ITERATIONS,
    ) -> SimulationResult:
        """Project ``goal`` under a stressed market regime.

        The stressed result is returned to the caller but not appended to the
        goal's history, so trend queries only show regular simulations.
        """

        tier = RiskTier(risk_tier)
        parameters = stressed_parameters(self.parameters_for(tier), regime)
        stats, months = self.project(goal, tier, iterations, parameters=parameters)
        return SimulationResult(
            goal_id=goal.goal_id,
            user_id=goal.user_id,
            iterations=int(iterations),
            p1=stats.p1,
            p10=stats.p10,
            p50=stats.p50,
            p90=stats.p90,
            success_probability=stats.success_probability,
            expected_shortfall=stats.expected_shortfall,
            risk_tier=tier,
            horizon_months=months,
            target_amount=float(goal.target_amount),
            created_at=self._clock(),
        )

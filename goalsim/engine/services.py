"""Assemble the simulator services once at process start."""

from __future__ import annotations

from dataclasses import dataclass

from goalsim.engine.config import EngineSettings
from goalsim.engine.goals import (
    AdaptiveRiskController,
    GoalDirectory,
    Notifier,
    ResultStore,
    RiskProfileRegistry,
    SimulationEngine,
    SimulationRequestGuard,
    SweepScheduler,
    SweepReport,
    WeeklySchedule,
    utc_now,
)
from goalsim.engine.goals.stores import Clock
from goalsim.engine.utils.rand import BoxMullerGenerator, RandomPathGenerator

__all__ = ["Services", "build_services"]


@dataclass(frozen=True)
class Services:
    """Service objects sharing one store, clock and generator."""

    store: ResultStore
    directory: GoalDirectory
    engine: SimulationEngine
    registry: RiskProfileRegistry
    guard: SimulationRequestGuard
    controller: AdaptiveRiskController
    scheduler: SweepScheduler[SweepReport]


def build_services(
    settings: EngineSettings,
    *,
    store: ResultStore,
    directory: GoalDirectory,
    notifier: Notifier,
    clock: Clock = utc_now,
    generator: RandomPathGenerator | None = None,
) -> Services:
    """Wire the engine, registry, guard, controller and scheduler together."""

    source = generator if generator is not None else BoxMullerGenerator(settings.seed)
    engine = SimulationEngine(
        store,
        generator=source,
        clock=clock,
        tier_parameters=settings.tier_parameters,
        max_iterations=settings.max_iterations,
        path_workers=settings.path_workers,
    )
    registry = RiskProfileRegistry(
        store, default_min_success_probability=settings.default_min_success_probability
    )
    guard = SimulationRequestGuard(
        engine,
        registry,
        store,
        clock=clock,
        max_iterations=settings.max_iterations,
        default_iterations=settings.default_request_iterations,
        cooldown_seconds=settings.cooldown_seconds,
        fail_open=settings.fail_open,
    )
    schedule = WeeklySchedule(
        weekday=settings.schedule_weekday,
        hour=settings.schedule_hour,
        minute=settings.schedule_minute,
        timezone=settings.timezone,
    )
    controller = AdaptiveRiskController(
        engine,
        registry,
        store,
        directory,
        notifier,
        schedule=schedule,
        clock=clock,
        iterations=settings.scheduled_iterations,
        max_workers=settings.max_workers,
        goal_timeout=settings.goal_timeout_seconds,
    )
    scheduler = SweepScheduler(controller.sweep, schedule, clock=clock)
    return Services(
        store=store,
        directory=directory,
        engine=engine,
        registry=registry,
        guard=guard,
        controller=controller,
        scheduler=scheduler,
    )

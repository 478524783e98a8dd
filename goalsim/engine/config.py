"""Configuration loading and validation for goalsim services.

The settings live in a single YAML document (``configs/goalsim.yml`` by
default). Validation mirrors the rest of the engine: every problem is
collected as a human readable diagnostic in a :class:`ValidationSummary`
instead of failing on the first bad field, and the caller decides whether the
errors are fatal.
"""

from __future__ import annotations

# ruff: noqa: ANN401
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from goalsim.engine.goals.models import (
    DEFAULT_MIN_SUCCESS_PROBABILITY,
    DEFAULT_TIER_PARAMETERS,
    RiskTier,
    TierParameters,
)
from goalsim.engine.utils.io import read_yaml
from goalsim.engine.utils.rand import seed_for_stream

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DATABASE_ENV_FLAG",
    "EngineSettings",
    "ValidationSummary",
    "validate_settings",
    "load_settings",
]

DEFAULT_CONFIG_PATH = Path("configs") / "goalsim.yml"
DATABASE_ENV_FLAG = "GOALSIM_DATABASE_URL"
SEED_STREAM = "simulation"


@dataclass(frozen=True)
class EngineSettings:
    """Runtime settings shared by the engine, guard, controller and scheduler.

    Attributes:
      tier_parameters: Return model per risk tier.
      max_iterations: Hard cap on paths per simulation.
      scheduled_iterations: Paths used by the weekly sweep.
      default_request_iterations: Paths used when a request omits the count.
      cooldown_seconds: Minimum gap between two requests of one user.
      fail_open: Whether guard-internal errors admit the request.
      max_workers: Goals evaluated concurrently by the sweep.
      path_workers: Threads used for the paths of one simulation.
      goal_timeout_seconds: Budget of one goal's simulation during a sweep.
      default_min_success_probability: Threshold given to new risk profiles.
      seed: Optional seed making simulations reproducible.
      schedule_weekday: Weekday of the sweep (Monday=0, Sunday=6).
      schedule_hour: Local hour of the sweep.
      schedule_minute: Local minute of the sweep.
      timezone: Reference timezone of the schedule.
      database_url: SQLAlchemy URL of the result store.
    """

    tier_parameters: dict[RiskTier, TierParameters] = field(
        default_factory=lambda: dict(DEFAULT_TIER_PARAMETERS)
    )
    max_iterations: int = 10_000
    scheduled_iterations: int = 10_000
    default_request_iterations: int = 1_000
    cooldown_seconds: float = 60.0
    fail_open: bool = True
    max_workers: int = 4
    path_workers: int = 1
    goal_timeout_seconds: float | None = 120.0
    default_min_success_probability: float = DEFAULT_MIN_SUCCESS_PROBABILITY
    seed: int | None = None
    schedule_weekday: int = 6
    schedule_hour: int = 0
    schedule_minute: int = 0
    timezone: str = "UTC"
    database_url: str = "sqlite:///goalsim.db"


@dataclass(slots=True)
class ValidationSummary:
    """Diagnostics gathered while validating a settings document."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    settings: EngineSettings | None = None


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _as_float(
    value: Any,
    *,
    path: str,
    errors: list[str],
    minimum: float | None = None,
    maximum: float | None = None,
) -> float | None:
    """Validate ``value`` as float returning the coerced number when valid."""

    if not _is_number(value):
        errors.append(f"{path} must be a number")
        return None
    number = float(value)
    if minimum is not None and number < minimum:
        errors.append(f"{path} must be >= {minimum}")
        return None
    if maximum is not None and number > maximum:
        errors.append(f"{path} must be <= {maximum}")
        return None
    return number


def _as_int(
    value: Any,
    *,
    path: str,
    errors: list[str],
    minimum: int | None = None,
    maximum: int | None = None,
) -> int | None:
    """Validate ``value`` as integer returning it when valid."""

    if not isinstance(value, int) or isinstance(value, bool):
        errors.append(f"{path} must be an integer")
        return None
    if minimum is not None and value < minimum:
        errors.append(f"{path} must be >= {minimum}")
        return None
    if maximum is not None and value > maximum:
        errors.append(f"{path} must be <= {maximum}")
        return None
    return value


def _section(payload: dict[str, Any], name: str, errors: list[str]) -> dict[str, Any]:
    value = payload.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        errors.append(f"{name} must be a mapping")
        return {}
    return value


def _validate_tiers(value: Any, *, errors: list[str]) -> dict[RiskTier, TierParameters]:
    """Merge configured tier parameters over the defaults."""

    tiers = dict(DEFAULT_TIER_PARAMETERS)
    if value is None:
        return tiers
    if not isinstance(value, dict):
        errors.append("simulation.tiers must be a mapping")
        return tiers
    for name, entry in value.items():
        try:
            tier = RiskTier(str(name))
        except ValueError:
            errors.append(f"simulation.tiers.{name} is not a known risk tier")
            continue
        if not isinstance(entry, dict):
            errors.append(f"simulation.tiers.{name} must be a mapping")
            continue
        mean = _as_float(
            entry.get("mean"), path=f"simulation.tiers.{name}.mean", errors=errors,
            minimum=-1.0, maximum=1.0,
        )
        vol = _as_float(
            entry.get("vol"), path=f"simulation.tiers.{name}.vol", errors=errors,
            minimum=0.0, maximum=2.0,
        )
        if mean is None or vol is None:
            continue
        tiers[tier] = TierParameters(mean_return=mean, volatility=vol)
    return tiers


def validate_settings(payload: Any) -> ValidationSummary:
    """Validate a parsed settings document.

    Args:
      payload: Mapping loaded from YAML (``None`` means all defaults).

    Returns:
      A :class:`ValidationSummary`; ``settings`` is populated only when no
      error was recorded.
    """

    summary = ValidationSummary()
    errors = summary.errors
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        errors.append("settings must be a mapping")
        return summary

    defaults = EngineSettings()
    simulation = _section(payload, "simulation", errors)
    guard = _section(payload, "guard", errors)
    controller = _section(payload, "controller", errors)
    schedule = _section(payload, "schedule", errors)
    database = _section(payload, "database", errors)

    values: dict[str, Any] = {}
    values["tier_parameters"] = _validate_tiers(simulation.get("tiers"), errors=errors)
    values["max_iterations"] = _as_int(
        simulation.get("max_iterations", defaults.max_iterations),
        path="simulation.max_iterations", errors=errors, minimum=1,
    )
    values["scheduled_iterations"] = _as_int(
        simulation.get("scheduled_iterations", defaults.scheduled_iterations),
        path="simulation.scheduled_iterations", errors=errors, minimum=1,
    )
    values["path_workers"] = _as_int(
        simulation.get("path_workers", defaults.path_workers),
        path="simulation.path_workers", errors=errors, minimum=1, maximum=64,
    )
    seed = simulation.get("seed")
    if seed is not None:
        seed = _as_int(seed, path="simulation.seed", errors=errors, minimum=0)
    values["seed"] = seed

    values["default_request_iterations"] = _as_int(
        guard.get("default_iterations", defaults.default_request_iterations),
        path="guard.default_iterations", errors=errors, minimum=1,
    )
    values["cooldown_seconds"] = _as_float(
        guard.get("cooldown_seconds", defaults.cooldown_seconds),
        path="guard.cooldown_seconds", errors=errors, minimum=0.0,
    )
    fail_open = guard.get("fail_open", defaults.fail_open)
    if not isinstance(fail_open, bool):
        errors.append("guard.fail_open must be a boolean")
    values["fail_open"] = fail_open

    values["max_workers"] = _as_int(
        controller.get("max_workers", defaults.max_workers),
        path="controller.max_workers", errors=errors, minimum=1, maximum=64,
    )
    timeout = controller.get("goal_timeout_seconds", defaults.goal_timeout_seconds)
    if timeout is not None:
        timeout = _as_float(
            timeout, path="controller.goal_timeout_seconds", errors=errors, minimum=0.0
        )
    values["goal_timeout_seconds"] = timeout
    values["default_min_success_probability"] = _as_float(
        controller.get("default_min_success_probability", defaults.default_min_success_probability),
        path="controller.default_min_success_probability", errors=errors,
        minimum=0.0, maximum=1.0,
    )

    values["schedule_weekday"] = _as_int(
        schedule.get("weekday", defaults.schedule_weekday),
        path="schedule.weekday", errors=errors, minimum=0, maximum=6,
    )
    values["schedule_hour"] = _as_int(
        schedule.get("hour", defaults.schedule_hour),
        path="schedule.hour", errors=errors, minimum=0, maximum=23,
    )
    values["schedule_minute"] = _as_int(
        schedule.get("minute", defaults.schedule_minute),
        path="schedule.minute", errors=errors, minimum=0, maximum=59,
    )
    timezone = schedule.get("timezone", defaults.timezone)
    if not isinstance(timezone, str) or not timezone.strip():
        errors.append("schedule.timezone must be a non-empty string")
    values["timezone"] = timezone

    url = database.get("url", defaults.database_url)
    if not isinstance(url, str) or not url.strip():
        errors.append("database.url must be a non-empty string")
    values["database_url"] = url

    if errors:
        return summary

    if values["scheduled_iterations"] > values["max_iterations"]:
        errors.append("simulation.scheduled_iterations must be <= simulation.max_iterations")
    if values["default_request_iterations"] > values["max_iterations"]:
        errors.append("guard.default_iterations must be <= simulation.max_iterations")
    if errors:
        return summary

    if not values["fail_open"]:
        summary.warnings.append(
            "guard.fail_open is disabled: cooldown lookup failures will reject requests"
        )
    if values["goal_timeout_seconds"] is None:
        summary.warnings.append("controller.goal_timeout_seconds is unset: sweeps are unbounded")

    summary.settings = EngineSettings(**values)
    return summary


def load_settings(path: Path | str | None = None) -> EngineSettings:
    """Load, validate and resolve the settings used at process start.

    A missing file yields the defaults. ``GOALSIM_DATABASE_URL`` overrides the
    configured database, and an unset seed falls back to the ``simulation``
    stream of ``audit/seeds.yml`` when that file exists.

    Raises:
      ValueError: If the document fails validation.
    """

    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    payload = read_yaml(config_path) if config_path.exists() else None
    summary = validate_settings(payload)
    if summary.settings is None:
        raise ValueError("invalid goalsim settings: " + "; ".join(summary.errors))
    settings = summary.settings
    overrides: dict[str, Any] = {}
    env_url = os.environ.get(DATABASE_ENV_FLAG)
    if env_url:
        overrides["database_url"] = env_url
    if settings.seed is None:
        overrides["seed"] = seed_for_stream(SEED_STREAM)
    if overrides:
        settings = replace(settings, **overrides)
    return settings

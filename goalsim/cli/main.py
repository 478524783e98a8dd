"""Command-line interface for the goalsim simulator and weekly sweep."""

from __future__ import annotations

import argparse
import signal
import threading
from datetime import UTC, date, datetime, timedelta
from pathlib import Path

from sqlalchemy.orm import sessionmaker

from goalsim.engine.config import DEFAULT_CONFIG_PATH, EngineSettings, load_settings, validate_settings
from goalsim.engine.errors import GoalSimError
from goalsim.engine.goals import (
    STRESS_REGIMES,
    EvaluationOutcome,
    Goal,
    InMemoryResultStore,
    RiskTier,
    SimulationEngine,
    SimulationResult,
    utc_now,
    write_history_csv,
)
from goalsim.engine.goals.mc import DAYS_PER_MONTH
from goalsim.engine.logging import configure_cli_logging, record_metrics
from goalsim.engine.services import Services, build_services
from goalsim.engine.utils.io import read_yaml, write_json
from goalsim.engine.utils.rand import generator_from_seed

DESCRIPTION = "goalsim goal-outcome simulator"


def _parse_date(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:  # pragma: no cover - argparse validation
        raise argparse.ArgumentTypeError("Expected YYYY-MM-DD date format") from exc


def _parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp; naive values are read as UTC."""

    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:  # pragma: no cover - argparse validation
        raise argparse.ArgumentTypeError("Invalid timestamp. Use ISO 8601 format.") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _add_simulate_subparser(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> None:
    simulate = subparsers.add_parser("simulate", help="Project an ad-hoc goal via Monte Carlo")
    simulate.add_argument("--target", type=float, required=True, help="Target amount")
    simulate.add_argument("--current", type=float, default=0.0, help="Amount already saved")
    simulate.add_argument(
        "--monthly", type=float, default=0.0, help="Monthly contribution added after growth"
    )
    horizon = simulate.add_mutually_exclusive_group(required=True)
    horizon.add_argument("--target-date", type=_parse_date, help="Goal deadline (YYYY-MM-DD)")
    horizon.add_argument("--months", type=int, help="Horizon in months from today")
    simulate.add_argument(
        "--tier",
        choices=[tier.value for tier in RiskTier],
        default=RiskTier.MODERATE.value,
        help="Risk tier selecting the return model",
    )
    simulate.add_argument("--iterations", type=int, help="Number of Monte Carlo paths")
    simulate.add_argument("--seed", type=int, help="Random seed for reproducible runs")
    simulate.add_argument(
        "--stress",
        choices=sorted(STRESS_REGIMES),
        help="Also project the goal under a stressed market regime",
    )
    simulate.add_argument(
        "--output",
        type=Path,
        help="Optional JSON file receiving the simulation result",
    )


def _add_sweep_subparser(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> None:
    sweep = subparsers.add_parser("sweep", help="Run one adaptive risk sweep over active goals")
    sweep.add_argument(
        "--at",
        type=_parse_timestamp,
        help="Instant identifying the scheduling window (default: now)",
    )


def _add_history_subparser(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> None:
    history = subparsers.add_parser("history", help="Export a goal's simulation history")
    history.add_argument("--goal-id", required=True, help="Goal identifier")
    history.add_argument("--limit", type=int, help="Keep only the most recent results")
    history.add_argument(
        "--output-dir",
        type=Path,
        default=Path("reports"),
        help="Directory receiving history/history_<goal>.csv",
    )


def _add_schedule_subparser(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> None:
    subparsers.add_parser(
        "schedule", help="Run the adaptive risk sweep on its weekly cadence until stopped"
    )


def _add_validate_subparser(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> None:
    """Attach the validate command used for configuration checks."""

    validate = subparsers.add_parser("validate", help="Validate the goalsim YAML configuration")
    validate.add_argument(
        "--verbose",
        action="store_true",
        help="Print the resolved settings on success",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="goalsim", description=DESCRIPTION)
    parser.add_argument(
        "--json-logs",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Mirror logs to artifacts/logs/goalsim.log in JSON format",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to goalsim.yml configuration",
    )
    sub = parser.add_subparsers(dest="cmd", required=True)
    _add_validate_subparser(sub)
    _add_simulate_subparser(sub)
    _add_sweep_subparser(sub)
    _add_history_subparser(sub)
    _add_schedule_subparser(sub)
    return parser


def _settings(args: argparse.Namespace) -> EngineSettings:
    try:
        return load_settings(args.config)
    except ValueError as exc:
        raise SystemExit(f"[goalsim] {exc}") from exc


def _sql_services(settings: EngineSettings) -> Services:
    from backend import crud, database

    engine = database.build_engine(settings.database_url)
    database.init_db(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)
    return build_services(
        settings,
        store=crud.SqlResultStore(factory),
        directory=crud.SqlGoalDirectory(factory),
        notifier=crud.SqlNotifier(factory),
    )


def _format_result(result: SimulationResult) -> str:
    return (
        f"tier={result.risk_tier.value} iterations={result.iterations} "
        f"months={result.horizon_months} success={result.success_probability:.3f} "
        f"p1={result.p1:.2f} p10={result.p10:.2f} p50={result.p50:.2f} p90={result.p90:.2f} "
        f"shortfall={result.expected_shortfall:.2f}"
    )


def _handle_simulate(args: argparse.Namespace) -> None:
    settings = _settings(args)
    now = utc_now()
    if args.target_date is not None:
        target_date: date | datetime = args.target_date
    else:
        if args.months < 1:
            raise SystemExit("[goalsim] --months must be >= 1")
        target_date = now + timedelta(days=args.months * DAYS_PER_MONTH) - timedelta(minutes=1)
    goal = Goal(
        goal_id="cli",
        user_id="cli",
        target_amount=args.target,
        target_date=target_date,
        current_amount=args.current,
        monthly_contribution=args.monthly,
        title="ad-hoc goal",
    )
    seed = args.seed if args.seed is not None else settings.seed
    engine = SimulationEngine(
        InMemoryResultStore(),
        generator=generator_from_seed(seed),
        clock=lambda: now,
        tier_parameters=settings.tier_parameters,
        max_iterations=settings.max_iterations,
        path_workers=settings.path_workers,
    )
    iterations = args.iterations if args.iterations is not None else settings.scheduled_iterations
    try:
        result = engine.simulate(goal, args.tier, iterations)
        stressed = (
            engine.run_stress_test(goal, args.tier, regime=args.stress, iterations=iterations)
            if args.stress
            else None
        )
    except GoalSimError as exc:
        raise SystemExit(f"[goalsim] simulate error: {exc}") from exc
    print(f"[goalsim] simulate {_format_result(result)}")
    if stressed is not None:
        print(f"[goalsim] stress regime={args.stress} {_format_result(stressed)}")
    if args.output is not None:
        payload = {"result": result.to_dict()}
        if stressed is not None:
            payload["stress"] = {"regime": args.stress, **stressed.to_dict()}
        write_json(payload, args.output)
        print(f"[goalsim] simulate output={args.output}")


def _handle_sweep(args: argparse.Namespace) -> None:
    settings = _settings(args)
    services = _sql_services(settings)
    report = services.scheduler.run_once(args.at)
    record_metrics("cli_sweep_goals", len(report.evaluations), {"window": report.window})
    counts = " ".join(
        f"{outcome.value}={report.count(outcome)}" for outcome in EvaluationOutcome
    )
    print(f"[goalsim] sweep window={report.window} goals={len(report.evaluations)} {counts}")
    for failure in report.failures:
        print(f"[goalsim] sweep failure goal={failure.goal_id} error={failure.error}")


def _handle_history(args: argparse.Namespace) -> None:
    settings = _settings(args)
    services = _sql_services(settings)
    results = services.store.list_results(args.goal_id, limit=args.limit)
    if not results:
        raise SystemExit(f"[goalsim] no simulations recorded for goal {args.goal_id}")
    path = write_history_csv(results, args.goal_id, args.output_dir)
    latest = results[0]
    print(
        f"[goalsim] history goal={args.goal_id} runs={len(results)} "
        f"latest_success={latest.success_probability:.3f} csv={path}"
    )


def _stop_on_signals() -> threading.Event:
    """Return an event set by SIGINT or SIGTERM."""

    stop = threading.Event()

    def _request_stop(signum: int, _frame: object) -> None:
        print(f"[goalsim] schedule stopping signal={signal.Signals(signum).name}")
        stop.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        signal.signal(signum, _request_stop)
    return stop


def _handle_schedule(args: argparse.Namespace) -> None:
    settings = _settings(args)
    services = _sql_services(settings)
    schedule = services.scheduler.schedule
    next_run = schedule.next_run(utc_now())
    print(
        f"[goalsim] schedule cadence='{schedule.cron}' tz={schedule.timezone} "
        f"next={next_run.isoformat()}"
    )
    services.scheduler.run_forever(_stop_on_signals())
    print("[goalsim] schedule stopped")


def _handle_validate(args: argparse.Namespace) -> None:
    """Validate the configuration file and report diagnostics to stdout."""

    payload = read_yaml(args.config) if Path(args.config).exists() else None
    if payload is None:
        print(f"[goalsim] validate warning: {args.config} not found, using defaults")
    summary = validate_settings(payload)
    for warning in summary.warnings:
        print(f"[goalsim] validate warning: {warning}")
    if summary.errors:
        for error in summary.errors:
            print(f"[goalsim] validate error: {error}")
        raise SystemExit(1)
    if args.verbose and summary.settings is not None:
        print(f"[goalsim] validate settings={summary.settings}")
    print("[goalsim] validate status=ok")


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_cli_logging(json_logs=bool(args.json_logs))
    if args.cmd == "simulate":
        _handle_simulate(args)
    elif args.cmd == "sweep":
        _handle_sweep(args)
    elif args.cmd == "history":
        _handle_history(args)
    elif args.cmd == "schedule":
        _handle_schedule(args)
    elif args.cmd == "validate":
        _handle_validate(args)
    else:
        print(f"[goalsim] command = {args.cmd}")


if __name__ == "__main__":
    main()

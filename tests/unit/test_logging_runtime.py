from __future__ import annotations

import json
import logging
from collections.abc import Iterator

import pytest

from goalsim.engine import logging as runtime_logging
from goalsim.engine.logging import configure_cli_logging, record_metrics, setup_logger


@pytest.fixture(autouse=True)
def isolate_logging() -> Iterator[None]:
    """Reset logging handlers after each test."""

    root = logging.getLogger()
    root.handlers = []
    root.setLevel(logging.NOTSET)
    yield
    for logger in list(logging.Logger.manager.loggerDict.values()):
        if isinstance(logger, logging.Logger):
            for handler in logger.handlers:
                handler.close()
            logger.handlers = []
            logger.setLevel(logging.NOTSET)
    root.handlers = []
    root.setLevel(logging.NOTSET)


def test_setup_logger_resolves_level_from_environment(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """The helper must honour GOALSIM_LOG_LEVEL when configuring loggers."""

    monkeypatch.setenv(runtime_logging.LEVEL_ENV_FLAG, "DEBUG")
    logger = setup_logger("goalsim.tests.level")

    assert logger.isEnabledFor(logging.DEBUG)
    console_handlers = [h for h in logger.handlers if getattr(h, "_goalsim_console", False)]
    assert len(console_handlers) == 1
    assert console_handlers[0].formatter._fmt == runtime_logging.CONSOLE_FORMAT


def test_setup_logger_is_idempotent() -> None:
    first = setup_logger("goalsim.tests.idem")
    second = setup_logger("goalsim.tests.idem")
    assert first is second
    assert len(first.handlers) == 1


def test_simulation_audit_record_is_structured() -> None:
    """JSON audit lines must carry the simulation extras."""

    logger = setup_logger("goalsim.tests.json", json_format=True)
    logger.info(
        "MONTE_CARLO_SIMULATION goal=g1",
        extra={
            "event": "MONTE_CARLO_SIMULATION",
            "goal_id": "g1",
            "iterations": 1000,
            "success_probability": 0.42,
            "process_time_ms": 12.5,
        },
    )
    for handler in logger.handlers:
        handler.flush()

    payloads = [
        json.loads(line)
        for line in runtime_logging.LOG_PATH.read_text(encoding="utf-8").splitlines()
        if line
    ]
    record = payloads[0]
    assert record["message"] == "MONTE_CARLO_SIMULATION goal=g1"
    assert record["event"] == "MONTE_CARLO_SIMULATION"
    assert record["goal_id"] == "g1"
    assert record["iterations"] == pytest.approx(1000.0)
    assert record["success_probability"] == pytest.approx(0.42)
    assert record["process_time_ms"] == pytest.approx(12.5)
    assert record["outcome"] is None


def test_record_metrics_appends_jsonl() -> None:
    """Metrics helper must append JSON lines with tags."""

    record_metrics("sweep_downgrade", 2, {"window": "2026-W42"})
    record_metrics("guard_fail_open", 1.0)
    lines = [
        json.loads(line)
        for line in runtime_logging.METRICS_PATH.read_text(encoding="utf-8").splitlines()
        if line
    ]
    assert [line["metric"] for line in lines] == ["sweep_downgrade", "guard_fail_open"]
    assert lines[0]["value"] == pytest.approx(2.0)
    assert lines[0]["tags"] == {"window": "2026-W42"}
    assert lines[1]["tags"] == {}


def test_configure_cli_logging_updates_existing_loggers(monkeypatch: pytest.MonkeyPatch) -> None:
    """Existing goalsim loggers should gain JSON handlers when requested."""

    monkeypatch.setenv(runtime_logging.JSON_ENV_FLAG, "0")
    first = setup_logger("goalsim.engine.sample")
    other = setup_logger("thirdparty.sample")
    assert not any(getattr(h, "_goalsim_json", False) for h in first.handlers)

    configure_cli_logging(json_logs=True)
    assert any(getattr(h, "_goalsim_json", False) for h in first.handlers)
    assert not any(getattr(h, "_goalsim_json", False) for h in other.handlers)

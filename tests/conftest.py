"""Configurazione Pytest condivisa per goalsim."""

from __future__ import annotations

import os
import sys
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest


def _insert_repo_root() -> None:
    """Assicura che la root del repository sia sul ``sys.path`` per gli import."""

    repo_root = Path(__file__).resolve().parents[1]
    if str(repo_root) not in sys.path:
        sys.path.insert(0, str(repo_root))


_insert_repo_root()

from goalsim.engine.goals import (  # noqa: E402
    Goal,
    InMemoryGoalDirectory,
    InMemoryResultStore,
    RecordingNotifier,
    RiskProfileRegistry,
    SimulationEngine,
)
from goalsim.engine.goals.mc import DAYS_PER_MONTH  # noqa: E402
from goalsim.engine.utils.rand import BoxMullerGenerator  # noqa: E402

FIXED_NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


def pytest_report_header(config: pytest.Config) -> Iterable[str]:  # pragma: no cover - pytest hook
    """Mostra contesto diagnostico per le esecuzioni di test."""

    root = Path.cwd()
    log_level = os.environ.get("GOALSIM_LOG_LEVEL", "INFO")
    return [f"goalsim repo: {root}", f"GOALSIM_LOG_LEVEL={log_level}"]


@pytest.fixture(autouse=True)
def _set_verbose_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    """Imposta il livello di log a INFO e ripulisce le variabili d'ambiente goalsim."""

    monkeypatch.setenv("GOALSIM_LOG_LEVEL", "INFO")
    monkeypatch.delenv("GOALSIM_JSON_LOGS", raising=False)
    monkeypatch.delenv("GOALSIM_DATABASE_URL", raising=False)


@pytest.fixture(autouse=True)
def _isolated_workdir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Esegue ogni test in una directory temporanea così che metriche e log restino isolati."""

    monkeypatch.chdir(tmp_path)
    return tmp_path


class FakeClock:
    """Orologio manuale usato per controllare cooldown e finestre di schedulazione."""

    def __init__(self, start: datetime = FIXED_NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store() -> InMemoryResultStore:
    return InMemoryResultStore()


@pytest.fixture()
def directory() -> InMemoryGoalDirectory:
    return InMemoryGoalDirectory()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def engine(store: InMemoryResultStore, clock: FakeClock) -> SimulationEngine:
    return SimulationEngine(store, generator=BoxMullerGenerator(2024), clock=clock)


@pytest.fixture()
def registry(store: InMemoryResultStore) -> RiskProfileRegistry:
    return RiskProfileRegistry(store)


def make_goal(
    goal_id: str = "g1",
    *,
    user_id: str = "u1",
    target_amount: float = 10_000.0,
    current_amount: float = 5_000.0,
    monthly_contribution: float = 100.0,
    months: int = 36,
    status: str = "active",
) -> Goal:
    """Costruisce un obiettivo con scadenza pari a ``months`` mesi dopo :data:`FIXED_NOW`."""

    deadline = FIXED_NOW + timedelta(days=months * DAYS_PER_MONTH) - timedelta(hours=1)
    return Goal(
        goal_id=goal_id,
        user_id=user_id,
        target_amount=target_amount,
        target_date=deadline,
        current_amount=current_amount,
        monthly_contribution=monthly_contribution,
        title=f"goal {goal_id}",
        status=status,
    )


@pytest.fixture()
def goal_factory():
    return make_goal

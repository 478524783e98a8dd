from __future__ import annotations

import pathlib
import sys
from datetime import date, datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import backend.models  # noqa: F401  # Ensure models are registered with metadata
from backend import crud, database, schemas, server
from backend.database import Base, session_scope
from backend.server import app
from goalsim.engine.config import EngineSettings
from goalsim.engine.services import build_services
from goalsim.engine.utils.rand import BoxMullerGenerator

FIXED_NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = FIXED_NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture(autouse=True)
def _isolated_artifacts(tmp_path, monkeypatch):
    monkeypatch.setenv("GOALSIM_LOG_LEVEL", "INFO")
    monkeypatch.delenv("GOALSIM_JSON_LOGS", raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def engine(monkeypatch):
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=test_engine)
    monkeypatch.setattr(database, "engine", test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture()
def db_session(session_factory):
    with session_scope(session_factory) as session:
        yield session


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def services(session_factory, clock):
    return build_services(
        EngineSettings(),
        store=crud.SqlResultStore(session_factory),
        directory=crud.SqlGoalDirectory(session_factory),
        notifier=crud.SqlNotifier(session_factory),
        clock=clock,
        generator=BoxMullerGenerator(7),
    )


@pytest.fixture()
def seed_goal(session_factory):
    def _seed(goal_id: str = "g1", **overrides):
        payload = {
            "id": goal_id,
            "user_id": "u1",
            "title": "House deposit",
            "target_amount": 10_000,
            "current_amount": 5_000,
            "monthly_contribution": 100,
            "target_date": date(2029, 10, 1),
        }
        payload.update(overrides)
        with session_scope(session_factory) as session:
            crud.create_goal(session, schemas.GoalCreate(**payload))
        return goal_id

    return _seed


@pytest.fixture()
def client(session_factory, services):
    def override_get_db():
        with session_scope(session_factory) as session:
            yield session

    app.dependency_overrides[database.get_db] = override_get_db
    app.dependency_overrides[server.get_services] = lambda: services
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()

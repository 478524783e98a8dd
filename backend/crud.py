"""CRUD helpers and SQL-backed collaborators for the goalsim backend."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from goalsim.engine.errors import GoalNotFoundError
from goalsim.engine.goals.models import (
    Goal,
    Notification,
    RebalanceEvent,
    RiskProfile,
    RiskTier,
    SimulationResult,
)

from . import models, schemas
from .database import session_scope


class EntityNotFoundError(RuntimeError):
    """Raised when an entity cannot be located in the database."""


class EntityConflictError(RuntimeError):
    """Raised when a unique constraint is violated."""


def _to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise timestamps to aware UTC; SQLite hands back naive values."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def goal_from_record(record: models.GoalRecord) -> Goal:
    return Goal(
        goal_id=record.id,
        user_id=record.user_id,
        target_amount=float(record.target_amount),
        target_date=record.target_date,
        current_amount=float(record.current_amount or 0),
        monthly_contribution=float(record.monthly_contribution or 0),
        title=record.title or "",
        status=record.status,
    )


def profile_from_record(record: models.RiskProfileRecord) -> RiskProfile:
    return RiskProfile(
        goal_id=record.goal_id,
        risk_tier=RiskTier(record.risk_tier),
        auto_rebalance=bool(record.auto_rebalance),
        min_success_probability=float(record.min_success_probability),
        last_simulation_at=_to_utc(record.last_simulation_at),
        version=int(record.version),
    )


def result_from_record(record: models.SimulationResultRecord) -> SimulationResult:
    return SimulationResult(
        goal_id=record.goal_id,
        user_id=record.user_id,
        iterations=record.iterations,
        p1=record.p1_value,
        p10=record.p10_value,
        p50=record.p50_value,
        p90=record.p90_value,
        success_probability=record.success_probability,
        expected_shortfall=record.expected_shortfall,
        risk_tier=RiskTier(record.risk_tier),
        horizon_months=record.horizon_months,
        target_amount=record.target_amount,
        created_at=_to_utc(record.created_at),
        result_id=record.id,
    )


def event_from_record(record: models.RebalanceEventRecord) -> RebalanceEvent:
    return RebalanceEvent(
        goal_id=record.goal_id,
        previous_tier=RiskTier(record.previous_tier),
        new_tier=RiskTier(record.new_tier),
        success_probability=record.success_probability,
        window=record.window,
        created_at=_to_utc(record.created_at),
    )


def _event_record(event: RebalanceEvent) -> models.RebalanceEventRecord:
    return models.RebalanceEventRecord(
        goal_id=event.goal_id,
        previous_tier=RiskTier(event.previous_tier).value,
        new_tier=RiskTier(event.new_tier).value,
        success_probability=event.success_probability,
        window=event.window,
        created_at=_to_utc(event.created_at),
    )


def list_goals(session: Session, user_id: Optional[str] = None) -> List[models.GoalRecord]:
    stmt = select(models.GoalRecord).order_by(models.GoalRecord.target_date, models.GoalRecord.id)
    if user_id is not None:
        stmt = stmt.where(models.GoalRecord.user_id == user_id)
    return list(session.scalars(stmt))


def get_goal(session: Session, goal_id: str) -> models.GoalRecord:
    goal = session.get(models.GoalRecord, goal_id)
    if goal is None:
        raise EntityNotFoundError(f"Goal {goal_id} not found")
    return goal


def create_goal(session: Session, goal_in: schemas.GoalCreate) -> models.GoalRecord:
    data = goal_in.model_dump(exclude_unset=True, exclude_none=True)
    goal = models.GoalRecord(**data)
    session.add(goal)
    try:
        session.flush()
    except IntegrityError as exc:
        raise EntityConflictError(f"Goal {goal_in.id} already exists") from exc
    session.refresh(goal)
    return goal


class SqlGoalDirectory:
    """Goal directory reading the ``goals`` table."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._factory = session_factory

    def list_active_goals(self) -> List[Goal]:
        with session_scope(self._factory) as session:
            stmt = select(models.GoalRecord).where(models.GoalRecord.status == "active")
            return [goal_from_record(record) for record in session.scalars(stmt)]

    def get_goal(self, goal_id: str) -> Goal:
        with session_scope(self._factory) as session:
            record = session.get(models.GoalRecord, goal_id)
            if record is None:
                raise GoalNotFoundError(f"Goal {goal_id} not found")
            return goal_from_record(record)


class SqlResultStore:
    """Result store persisting profiles, results and rebalance events.

    Every method runs in its own short transaction so that a long simulation
    never holds a connection. The profile compare-and-swap is a single
    ``UPDATE ... WHERE version = :expected`` statement.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._factory = session_factory

    def get_profile(self, goal_id: str) -> Optional[RiskProfile]:
        with session_scope(self._factory) as session:
            record = session.get(models.RiskProfileRecord, goal_id)
            return profile_from_record(record) if record is not None else None

    def create_profile(self, profile: RiskProfile) -> RiskProfile:
        try:
            with session_scope(self._factory) as session:
                existing = session.get(models.RiskProfileRecord, profile.goal_id)
                if existing is not None:
                    return profile_from_record(existing)
                record = models.RiskProfileRecord(
                    goal_id=profile.goal_id,
                    risk_tier=RiskTier(profile.risk_tier).value,
                    auto_rebalance=profile.auto_rebalance,
                    min_success_probability=profile.min_success_probability,
                    last_simulation_at=_to_utc(profile.last_simulation_at),
                    version=profile.version,
                )
                session.add(record)
                session.flush()
                return profile_from_record(record)
        except IntegrityError:
            # A concurrent writer inserted the same goal first.
            stored = self.get_profile(profile.goal_id)
            if stored is None:
                raise
            return stored

    @staticmethod
    def _versioned_update(goal_id: str, expected_version: int, changes: dict[str, Any]):
        values: dict[str, Any] = {}
        for key, value in changes.items():
            if isinstance(value, RiskTier):
                value = value.value
            elif isinstance(value, datetime):
                value = _to_utc(value)
            values[key] = value
        values["version"] = int(expected_version) + 1
        return (
            update(models.RiskProfileRecord)
            .where(
                models.RiskProfileRecord.goal_id == goal_id,
                models.RiskProfileRecord.version == int(expected_version),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    def compare_and_set_profile(
        self, goal_id: str, expected_version: int, **changes: Any
    ) -> Optional[RiskProfile]:
        with session_scope(self._factory) as session:
            stmt = self._versioned_update(goal_id, expected_version, changes)
            if session.execute(stmt).rowcount != 1:
                return None
        return self.get_profile(goal_id)

    def downgrade_with_event(
        self, goal_id: str, expected_version: int, event: RebalanceEvent, **changes: Any
    ) -> Optional[RiskProfile]:
        """Swap the profile and insert the window's event in one transaction.

        A duplicate ``(goal_id, window)`` violates the unique constraint, which
        rolls the profile update back with it.
        """
        try:
            with session_scope(self._factory) as session:
                stmt = self._versioned_update(goal_id, expected_version, changes)
                if session.execute(stmt).rowcount != 1:
                    return None
                session.add(_event_record(event))
                session.flush()
        except IntegrityError:
            return None
        return self.get_profile(goal_id)

    def touch_profile(self, goal_id: str, at: datetime) -> None:
        with session_scope(self._factory) as session:
            session.execute(
                update(models.RiskProfileRecord)
                .where(models.RiskProfileRecord.goal_id == goal_id)
                .values(last_simulation_at=_to_utc(at))
                .execution_options(synchronize_session=False)
            )

    def append_result(self, result: SimulationResult) -> SimulationResult:
        with session_scope(self._factory) as session:
            record = models.SimulationResultRecord(
                goal_id=result.goal_id,
                user_id=result.user_id,
                iterations=result.iterations,
                p1_value=result.p1,
                p10_value=result.p10,
                p50_value=result.p50,
                p90_value=result.p90,
                success_probability=result.success_probability,
                expected_shortfall=result.expected_shortfall,
                risk_tier=RiskTier(result.risk_tier).value,
                horizon_months=result.horizon_months,
                target_amount=result.target_amount,
                created_at=_to_utc(result.created_at),
            )
            session.add(record)
            session.flush()
            return result_from_record(record)

    def list_results(self, goal_id: str, limit: Optional[int] = None) -> List[SimulationResult]:
        stmt = (
            select(models.SimulationResultRecord)
            .where(models.SimulationResultRecord.goal_id == goal_id)
            .order_by(
                models.SimulationResultRecord.created_at.desc(),
                models.SimulationResultRecord.id.desc(),
            )
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with session_scope(self._factory) as session:
            return [result_from_record(record) for record in session.scalars(stmt)]

    def latest_result_for_user(self, user_id: str) -> Optional[SimulationResult]:
        stmt = (
            select(models.SimulationResultRecord)
            .where(models.SimulationResultRecord.user_id == user_id)
            .order_by(
                models.SimulationResultRecord.created_at.desc(),
                models.SimulationResultRecord.id.desc(),
            )
            .limit(1)
        )
        with session_scope(self._factory) as session:
            record = session.scalars(stmt).first()
            return result_from_record(record) if record is not None else None

    def append_rebalance_event(self, event: RebalanceEvent) -> RebalanceEvent:
        try:
            with session_scope(self._factory) as session:
                record = _event_record(event)
                session.add(record)
                session.flush()
                return event_from_record(record)
        except IntegrityError as exc:
            raise EntityConflictError(
                f"Goal {event.goal_id} was already rebalanced in window {event.window}"
            ) from exc

    def has_rebalance_event(self, goal_id: str, window: str) -> bool:
        stmt = select(models.RebalanceEventRecord.id).where(
            models.RebalanceEventRecord.goal_id == goal_id,
            models.RebalanceEventRecord.window == window,
        )
        with session_scope(self._factory) as session:
            return session.scalars(stmt).first() is not None

    def list_rebalance_events(self, goal_id: str) -> List[RebalanceEvent]:
        stmt = (
            select(models.RebalanceEventRecord)
            .where(models.RebalanceEventRecord.goal_id == goal_id)
            .order_by(models.RebalanceEventRecord.created_at, models.RebalanceEventRecord.id)
        )
        with session_scope(self._factory) as session:
            return [event_from_record(record) for record in session.scalars(stmt)]


class SqlNotifier:
    """Notifier writing user notifications to the ``notifications`` table."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._factory = session_factory

    def send(self, user_id: str, notification: Notification) -> None:
        with session_scope(self._factory) as session:
            session.add(
                models.NotificationRecord(
                    user_id=user_id,
                    title=notification.title,
                    message=notification.message,
                    kind=notification.kind,
                    payload=dict(notification.metadata),
                )
            )


def list_notifications(session: Session, user_id: str) -> List[models.NotificationRecord]:
    stmt = (
        select(models.NotificationRecord)
        .where(models.NotificationRecord.user_id == user_id)
        .order_by(models.NotificationRecord.created_at.desc(), models.NotificationRecord.id.desc())
    )
    return list(session.scalars(stmt))

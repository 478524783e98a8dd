"""SQLAlchemy models for goals, risk profiles and simulation history."""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class GoalRecord(Base):
    __tablename__ = "goals"

    id: str = Column(String(64), primary_key=True, default=_new_id)
    user_id: str = Column(String(64), nullable=False, index=True)
    title: str = Column(String(255), nullable=False, default="")
    target_amount: float = Column(Numeric(14, 2), nullable=False)
    current_amount: float = Column(Numeric(14, 2), nullable=False, default=0)
    monthly_contribution: float = Column(Numeric(14, 2), nullable=False, default=0)
    target_date: date = Column(Date, nullable=False)
    status: str = Column(String(20), nullable=False, default="active", index=True)
    created_at: datetime = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    risk_profile = relationship(
        "RiskProfileRecord", back_populates="goal", uselist=False, cascade="all, delete-orphan"
    )
    simulations = relationship(
        "SimulationResultRecord", back_populates="goal", cascade="all, delete-orphan"
    )


class RiskProfileRecord(Base):
    __tablename__ = "goal_risk_profiles"

    goal_id: str = Column(String(64), ForeignKey("goals.id", ondelete="CASCADE"), primary_key=True)
    risk_tier: str = Column(String(20), nullable=False, default="moderate")
    auto_rebalance: bool = Column(Boolean, nullable=False, default=False)
    min_success_probability: float = Column(Float, nullable=False, default=0.70)
    last_simulation_at: Optional[datetime] = Column(DateTime(timezone=True), nullable=True)
    version: int = Column(Integer, nullable=False, default=0)

    goal = relationship("GoalRecord", back_populates="risk_profile")


class SimulationResultRecord(Base):
    __tablename__ = "simulation_results"

    id: int = Column(Integer, primary_key=True, index=True)
    goal_id: str = Column(String(64), ForeignKey("goals.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: str = Column(String(64), nullable=False, index=True)
    iterations: int = Column(Integer, nullable=False)
    p1_value: float = Column(Float, nullable=False)
    p10_value: float = Column(Float, nullable=False)
    p50_value: float = Column(Float, nullable=False)
    p90_value: float = Column(Float, nullable=False)
    success_probability: float = Column(Float, nullable=False)
    expected_shortfall: float = Column(Float, nullable=False)
    risk_tier: str = Column(String(20), nullable=False)
    horizon_months: int = Column(Integer, nullable=False)
    target_amount: float = Column(Float, nullable=False)
    created_at: datetime = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

    goal = relationship("GoalRecord", back_populates="simulations")


class RebalanceEventRecord(Base):
    __tablename__ = "rebalance_events"
    __table_args__ = (UniqueConstraint("goal_id", "window", name="uq_rebalance_goal_window"),)

    id: int = Column(Integer, primary_key=True, index=True)
    goal_id: str = Column(String(64), ForeignKey("goals.id", ondelete="CASCADE"), nullable=False, index=True)
    previous_tier: str = Column(String(20), nullable=False)
    new_tier: str = Column(String(20), nullable=False)
    success_probability: float = Column(Float, nullable=False)
    window: str = Column(String(16), nullable=False)
    created_at: datetime = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class NotificationRecord(Base):
    __tablename__ = "notifications"

    id: int = Column(Integer, primary_key=True, index=True)
    user_id: str = Column(String(64), nullable=False, index=True)
    title: str = Column(String(255), nullable=False)
    message: str = Column(Text, nullable=False)
    kind: str = Column(String(40), nullable=False)
    payload: Optional[dict] = Column(JSON, nullable=True)
    created_at: datetime = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

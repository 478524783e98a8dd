"""Pydantic schemas for serialising goals, risk profiles and simulations."""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from goalsim.engine.goals.models import RiskTier


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class GoalBase(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    title: str = Field("", max_length=255)
    target_amount: Decimal = Field(..., ge=0)
    current_amount: Decimal = Field(Decimal("0"), ge=0)
    monthly_contribution: Decimal = Field(Decimal("0"), ge=0)
    target_date: date
    status: str = Field("active", max_length=20)


class GoalCreate(GoalBase):
    id: Optional[str] = Field(None, min_length=1, max_length=64)


class GoalRead(GoalBase, ORMModel):
    id: str
    created_at: datetime


class RiskProfileRead(ORMModel):
    goal_id: str
    risk_tier: RiskTier
    auto_rebalance: bool
    min_success_probability: float
    last_simulation_at: Optional[datetime] = None
    version: int


class RiskProfileUpdate(BaseModel):
    risk_tier: Optional[RiskTier] = None
    auto_rebalance: Optional[bool] = None
    min_success_probability: Optional[float] = Field(None, ge=0, le=1)
    expected_version: Optional[int] = Field(None, ge=0)


class SimulationRequest(BaseModel):
    # Range checks belong to the guard so that rejections carry its codes.
    iterations: Any = None


class SimulationRead(ORMModel):
    result_id: Optional[int] = None
    goal_id: str
    user_id: str
    iterations: int
    p1: float
    p10: float
    p50: float
    p90: float
    success_probability: float
    expected_shortfall: float
    risk_tier: RiskTier
    horizon_months: int
    target_amount: float
    created_at: datetime


class SimulationHistoryRead(BaseModel):
    goal_id: str
    results: List[SimulationRead]


class RejectionRead(BaseModel):
    code: str
    detail: str
    retry_after: Optional[float] = None

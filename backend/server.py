"""FastAPI application exposing goal simulation endpoints."""
from __future__ import annotations

import math
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from goalsim.engine.config import load_settings
from goalsim.engine.errors import (
    RATE_LIMITED,
    GoalNotFoundError,
    GuardUnavailableError,
    InvalidSimulationInput,
    NumericDegeneracyError,
    SimulationRejected,
    SimulationTimeoutError,
    StaleProfileError,
)
from goalsim.engine.goals.models import Goal
from goalsim.engine.services import Services, build_services

from . import crud, database, schemas


@asynccontextmanager
async def lifespan(_: FastAPI):
    database.init_db()
    yield


@lru_cache(maxsize=1)
def _default_services() -> Services:
    factory = database.SessionLocal
    return build_services(
        load_settings(),
        store=crud.SqlResultStore(factory),
        directory=crud.SqlGoalDirectory(factory),
        notifier=crud.SqlNotifier(factory),
    )


def get_services() -> Services:
    """FastAPI dependency returning the process-wide service objects."""
    return _default_services()


app = FastAPI(title="goalsim Simulation Backend", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _owned_goal(services: Services, goal_id: str, user_id: Optional[str] = None) -> Goal:
    try:
        goal = services.directory.get_goal(goal_id)
    except GoalNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if user_id is not None and goal.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Goal {goal_id} not found")
    return goal


def _rejection(exc: SimulationRejected) -> HTTPException:
    payload = schemas.RejectionRead(code=exc.code, detail=exc.message, retry_after=exc.retry_after)
    if exc.code == RATE_LIMITED:
        headers = None
        if exc.retry_after is not None:
            headers = {"Retry-After": str(max(1, math.ceil(exc.retry_after)))}
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=payload.model_dump(),
            headers=headers,
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=payload.model_dump())


@app.get("/goals", response_model=List[schemas.GoalRead])
def list_goals(
    user_id: Optional[str] = Query(None),
    db: Session = Depends(database.get_db),
) -> List[schemas.GoalRead]:
    return crud.list_goals(db, user_id=user_id)


@app.post(
    "/goals",
    response_model=schemas.GoalRead,
    status_code=status.HTTP_201_CREATED,
)
def create_goal(goal_in: schemas.GoalCreate, db: Session = Depends(database.get_db)) -> schemas.GoalRead:
    try:
        return crud.create_goal(db, goal_in)
    except crud.EntityConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@app.post(
    "/goals/{goal_id}/simulations",
    response_model=schemas.SimulationRead,
    status_code=status.HTTP_201_CREATED,
)
def run_simulation(
    goal_id: str,
    request: Optional[schemas.SimulationRequest] = None,
    x_user_id: str = Header(...),
    services: Services = Depends(get_services),
) -> schemas.SimulationRead:
    goal = _owned_goal(services, goal_id, x_user_id)
    iterations = request.iterations if request is not None else None
    try:
        result = services.guard.run(x_user_id, goal, iterations)
    except SimulationRejected as exc:
        raise _rejection(exc) from exc
    except GuardUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except (InvalidSimulationInput, NumericDegeneracyError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except SimulationTimeoutError as exc:
        raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(exc)) from exc
    return schemas.SimulationRead.model_validate(result)


@app.get("/goals/{goal_id}/simulations", response_model=schemas.SimulationHistoryRead)
def list_simulations(
    goal_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    services: Services = Depends(get_services),
) -> schemas.SimulationHistoryRead:
    _owned_goal(services, goal_id)
    results = services.store.list_results(goal_id, limit=limit)
    return schemas.SimulationHistoryRead(
        goal_id=goal_id,
        results=[schemas.SimulationRead.model_validate(item) for item in results],
    )


@app.get("/goals/{goal_id}/risk-profile", response_model=schemas.RiskProfileRead)
def get_risk_profile(goal_id: str, services: Services = Depends(get_services)) -> schemas.RiskProfileRead:
    _owned_goal(services, goal_id)
    return schemas.RiskProfileRead.model_validate(services.registry.get_or_create(goal_id))


@app.put("/goals/{goal_id}/risk-profile", response_model=schemas.RiskProfileRead)
def update_risk_profile(
    goal_id: str,
    update_in: schemas.RiskProfileUpdate,
    services: Services = Depends(get_services),
) -> schemas.RiskProfileRead:
    _owned_goal(services, goal_id)
    try:
        profile = services.registry.update(goal_id, **update_in.model_dump(exclude_unset=True))
    except StaleProfileError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except InvalidSimulationInput as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return schemas.RiskProfileRead.model_validate(profile)


@app.get("/health", tags=["system"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}

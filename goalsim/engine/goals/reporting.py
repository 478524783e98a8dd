"""Tabular views of the simulation history used for trend display."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import pandas as pd

from goalsim.engine.utils.io import ensure_dir, safe_path_segment

from .models import SimulationResult

__all__ = ["HISTORY_COLUMNS", "history_frame", "write_history_csv"]

HISTORY_COLUMNS = [
    "created_at",
    "goal_id",
    "risk_tier",
    "iterations",
    "horizon_months",
    "target_amount",
    "p1",
    "p10",
    "p50",
    "p90",
    "success_probability",
    "expected_shortfall",
]


def history_frame(results: Sequence[SimulationResult]) -> pd.DataFrame:
    """Return the results as a DataFrame sorted oldest first.

    Args:
      results: Simulation results of one or more goals, in any order.

    Returns:
      DataFrame with :data:`HISTORY_COLUMNS` plus ``probability_change``, the
      per-goal difference in success probability to the previous run.
    """

    if not results:
        return pd.DataFrame(columns=[*HISTORY_COLUMNS, "probability_change"])
    frame = pd.DataFrame([item.to_dict() for item in results]).loc[:, HISTORY_COLUMNS]
    frame["created_at"] = pd.to_datetime(frame["created_at"], utc=True)
    frame = frame.sort_values(["goal_id", "created_at"], kind="mergesort").reset_index(drop=True)
    frame["probability_change"] = frame.groupby("goal_id")["success_probability"].diff()
    return frame


def write_history_csv(
    results: Sequence[SimulationResult],
    goal_id: str,
    output_dir: Path | str | None = None,
) -> Path:
    """Export a goal's history to ``<output_dir>/history/history_<goal>.csv``."""

    root = ensure_dir(Path(output_dir) if output_dir is not None else Path("reports")) / "history"
    ensure_dir(root)
    path = root / f"history_{safe_path_segment(goal_id)}.csv"
    history_frame(results).to_csv(path, index=False)
    return path

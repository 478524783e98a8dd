"""Utility helpers for goalsim."""

from goalsim.engine.logging import configure_cli_logging, record_metrics, setup_logger

from .io import ensure_dir, read_yaml, safe_path_segment, write_json
from .rand import (
    DEFAULT_SEED_PATH,
    DEFAULT_STREAM,
    BoxMullerGenerator,
    RandomPathGenerator,
    box_muller,
    generator_from_seed,
    load_seeds,
    seed_for_stream,
)

__all__ = [
    "ensure_dir",
    "safe_path_segment",
    "read_yaml",
    "write_json",
    "configure_cli_logging",
    "record_metrics",
    "setup_logger",
    "DEFAULT_SEED_PATH",
    "DEFAULT_STREAM",
    "BoxMullerGenerator",
    "RandomPathGenerator",
    "box_muller",
    "generator_from_seed",
    "load_seeds",
    "seed_for_stream",
]

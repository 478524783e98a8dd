"""Namespace principale del motore goalsim."""

from __future__ import annotations

from . import goals, utils

__all__ = ["goals", "utils"]

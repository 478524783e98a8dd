"""Exception hierarchy shared by the simulation engine and its services."""

from __future__ import annotations

__all__ = [
    "GoalSimError",
    "InvalidSimulationInput",
    "SimulationRejected",
    "GuardUnavailableError",
    "NumericDegeneracyError",
    "SimulationTimeoutError",
    "StaleProfileError",
    "GoalNotFoundError",
    "ITERATIONS_TOO_HIGH",
    "ITERATIONS_INVALID",
    "RATE_LIMITED",
]

ITERATIONS_TOO_HIGH = "ITERATIONS_TOO_HIGH"
ITERATIONS_INVALID = "ITERATIONS_INVALID"
RATE_LIMITED = "RATE_LIMITED"


class GoalSimError(Exception):
    """Base exception for goalsim errors."""


class InvalidSimulationInput(GoalSimError):
    """Raised when a simulation request carries invalid parameters."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class SimulationRejected(GoalSimError):
    """Raised by the request guard before any path is simulated.

    Attributes:
      code: Machine readable reason (``ITERATIONS_TOO_HIGH``,
        ``ITERATIONS_INVALID`` or ``RATE_LIMITED``).
      retry_after: Seconds until the request may be retried, when known.
    """

    def __init__(self, code: str, message: str, retry_after: float | None = None) -> None:
        self.code = code
        self.message = message
        self.retry_after = retry_after
        super().__init__(f"{code}: {message}")


class GuardUnavailableError(GoalSimError):
    """Raised when the guard cannot evaluate its checks and fails closed."""


class NumericDegeneracyError(GoalSimError):
    """Raised when the simulation produces non-finite statistics."""


class SimulationTimeoutError(GoalSimError):
    """Raised when a simulation exceeds its deadline."""


class StaleProfileError(GoalSimError):
    """Raised when a risk profile changed between read and compare-and-swap."""

    def __init__(self, goal_id: str, expected: str, actual: str) -> None:
        self.goal_id = goal_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"risk profile for goal {goal_id} changed concurrently "
            f"(expected {expected}, found {actual})"
        )


class GoalNotFoundError(GoalSimError):
    """Raised when a goal identifier is unknown to the goal directory."""

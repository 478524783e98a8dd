"""Weekly cadence for the adaptive risk sweep."""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Generic, TypeVar
from zoneinfo import ZoneInfo

from goalsim.engine.logging import setup_logger

from .stores import Clock, utc_now

__all__ = ["WeeklySchedule", "SweepScheduler"]

LOG = setup_logger(__name__)

T = TypeVar("T")

_CRON_WEEKDAYS = {0: 1, 1: 2, 2: 3, 3: 4, 4: 5, 5: 6, 6: 0}


@dataclass(frozen=True)
class WeeklySchedule:
    """Cadence descriptor: one run per week at a fixed local time.

    Attributes:
      weekday: Day of the week using :meth:`datetime.weekday` numbering
        (Monday=0, Sunday=6).
      hour: Local hour of the run.
      minute: Local minute of the run.
      timezone: IANA name of the service's reference timezone.
    """

    weekday: int = 6
    hour: int = 0
    minute: int = 0
    timezone: str = "UTC"

    def __post_init__(self) -> None:
        if not 0 <= self.weekday <= 6:
            raise ValueError("weekday must be within 0..6")
        if not 0 <= self.hour <= 23 or not 0 <= self.minute <= 59:
            raise ValueError("hour/minute out of range")

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def cron(self) -> str:
        """Equivalent cron expression (``0 0 * * 0`` for Sunday midnight)."""

        return f"{self.minute} {self.hour} * * {_CRON_WEEKDAYS[self.weekday]}"

    def _localise(self, moment: datetime) -> datetime:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=self.tz)
        return moment.astimezone(self.tz)

    def last_run(self, moment: datetime) -> datetime:
        """Return the latest scheduled instant at or before ``moment``."""

        local = self._localise(moment)
        days_back = (local.weekday() - self.weekday) % 7
        candidate = (local - timedelta(days=days_back)).replace(
            hour=self.hour, minute=self.minute, second=0, microsecond=0
        )
        if candidate > local:
            candidate -= timedelta(days=7)
        return candidate

    def next_run(self, after: datetime) -> datetime:
        """Return the first scheduled instant strictly after ``after``."""

        return self.last_run(after) + timedelta(days=7)

    def window_for(self, moment: datetime) -> str:
        """Key of the scheduling window containing ``moment``.

        The window starts at the most recent scheduled instant; it is labelled
        with the ISO week of that instant, e.g. ``2026-W42``.
        """

        start = self.last_run(moment)
        year, week, _ = start.isocalendar()
        return f"{year}-W{week:02d}"


class SweepScheduler(Generic[T]):
    """Drive a sweep job on a :class:`WeeklySchedule`.

    ``run_once`` invokes the job immediately, which is what tests and the CLI
    use; ``run_forever`` sleeps until each scheduled instant.
    """

    def __init__(
        self,
        job: Callable[[datetime], T],
        schedule: WeeklySchedule | None = None,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._job = job
        self.schedule = schedule or WeeklySchedule()
        self._clock = clock

    def run_once(self, now: datetime | None = None) -> T:
        moment = now if now is not None else self._clock()
        LOG.info(
            "sweep triggered window=%s",
            self.schedule.window_for(moment),
            extra={"window": self.schedule.window_for(moment), "event": "SWEEP_TRIGGERED"},
        )
        return self._job(moment)

    def run_forever(self, stop_event: threading.Event) -> None:
        """Block, running the job at every scheduled instant until stopped.

        A failing sweep is logged and the loop waits for the next instant.
        """

        LOG.info("scheduler started cadence=%r tz=%s", self.schedule.cron, self.schedule.timezone)
        while not stop_event.is_set():
            now = self._clock()
            due = self.schedule.next_run(now)
            wait_seconds = max(0.0, (due - now).total_seconds())
            if stop_event.wait(wait_seconds):
                break
            try:
                self.run_once(due)
            except Exception:
                LOG.exception("scheduled sweep failed; waiting for next window")
        LOG.info("scheduler stopped")

"""Wall-clock budget for one execution attempt of a scan."""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Callable

from src.scans.errors import ScanTimeout

DEFAULT_BUDGET = timedelta(hours=2)


class TimeoutGuard:
    """Tracks elapsed time against a fixed budget.

    Time is read from a monotonic *clock* so wall-clock adjustments cannot
    shorten or extend a scan. A resumed scan gets a new guard and therefore
    a fresh budget.
    """

    def __init__(
        self,
        budget: timedelta = DEFAULT_BUDGET,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._budget = budget
        self._clock = clock
        self._started = clock()
        self._started_wall = datetime.now(timezone.utc)

    def elapsed(self) -> timedelta:
        return timedelta(seconds=self._clock() - self._started)

    def remaining(self) -> timedelta:
        return max(timedelta(0), self._budget - self.elapsed())

    def elapsed_hms(self) -> str:
        total = int(self.elapsed().total_seconds())
        hours, rest = divmod(total, 3600)
        minutes, seconds = divmod(rest, 60)
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"

    def expired(self) -> bool:
        return self.elapsed() >= self._budget

    def deadline(self) -> datetime:
        return self._started_wall + self._budget

    def check(self) -> None:
        if self.expired():
            raise ScanTimeout(
                f"Scan exceeded its {self._budget} budget after {self.elapsed_hms()}"
            )


def timeout_factory(hours: float, clock: Callable[[], float] = time.monotonic):
    """Return a zero-argument callable that starts a new guard per execution."""

    def _make() -> TimeoutGuard:
        return TimeoutGuard(timedelta(hours=hours), clock=clock)

    return _make

"""Caller-owned elapsed time tracking."""

import time
from typing import Dict, Optional


class Stopwatch:
    """Wall-clock stopwatch with named laps.

    Each caller creates and owns its own instance; nothing is shared
    between runs.
    """

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._start = clock()
        self._last = self._start
        self.laps: Dict[str, float] = {}

    def restart(self):
        self._start = self._clock()
        self._last = self._start
        self.laps.clear()

    def elapsed(self) -> float:
        """Seconds since the stopwatch was started."""
        return self._clock() - self._start

    def lap(self, label: str) -> float:
        """Record the seconds since the previous lap under label and return them."""
        now = self._clock()
        duration = now - self._last
        self._last = now
        self.laps[label] = self.laps.get(label, 0.0) + duration
        return duration

    def exceeded(self, budget: Optional[float]) -> bool:
        return budget is not None and self.elapsed() >= budget

    def format_elapsed(self) -> str:
        seconds = int(self.elapsed())
        hours, remainder = divmod(seconds, 3600)
        minutes, seconds = divmod(remainder, 60)
        return f"{hours:d}:{minutes:02d}:{seconds:02d}"

"""Per-subject exponential backoff shared by the enrichment pipelines."""

import time
import threading
from typing import Callable, Dict


class SubjectBackoff:
    """Tracks when a subject last ran and how long it must wait next.

    The interval starts at ``min_interval_s`` and doubles on every
    ``escalate`` up to ``max_interval_s``. Only ``reset`` lowers it.
    """

    def __init__(
        self,
        min_interval_s: float,
        max_interval_s: float,
        max_entries: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self.min_interval_s = min_interval_s
        self.max_interval_s = max_interval_s
        self.max_entries = max_entries
        self._clock = clock
        self._last: Dict[str, float] = {}
        self._intervals: Dict[str, float] = {}
        self._lock = threading.Lock()

    def configure(self, min_interval_s: float, max_interval_s: float) -> None:
        with self._lock:
            self.min_interval_s = min_interval_s
            self.max_interval_s = max_interval_s

    def interval(self, subject: str) -> float:
        return self._intervals.get(subject, self.min_interval_s)

    def last_time(self, subject: str) -> float:
        return self._last.get(subject, 0.0)

    def ready(self, subject: str) -> bool:
        if subject not in self._last:
            return True
        return self._clock() - self._last[subject] >= self.interval(subject)

    def escalate(self, subject: str) -> float:
        """Double the subject's interval (capped) and stamp the attempt."""
        with self._lock:
            current = self._intervals.get(subject, self.min_interval_s)
            value = max(min(current * 2, self.max_interval_s), current)
            self._intervals[subject] = value
            self._last[subject] = self._clock()
        self.prune()
        return value

    def reset(self, subject: str) -> None:
        with self._lock:
            self._intervals.pop(subject, None)
            self._last.pop(subject, None)

    def prune(self) -> None:
        """Forget the least recently attempted subjects above the cap."""
        with self._lock:
            if len(self._last) <= self.max_entries:
                return
            ordered = sorted(self._last, key=lambda s: self._last[s])
            for subject in ordered[: len(ordered) - self.max_entries]:
                self._last.pop(subject, None)
                self._intervals.pop(subject, None)

    def __len__(self) -> int:
        return len(self._last)

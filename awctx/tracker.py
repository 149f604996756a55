"""Focus-time tracking: in-memory tick counters flushed into the memory layer."""

import time
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from awctx.config import MemoryConfig
from awctx.layers import MEMORY, MemoryLayer
from awctx.pools import PersistentStore, SessionStore
from awctx.utils.helpers import day_key

LOG = logging.getLogger("aw-context-worker")

TODAY_KEY = "memory.today"
RECENT_DAYS = 7


class ActivityTracker:
    """Counts focus ticks per subject and periodically merges them to storage."""

    def __init__(
        self,
        session: SessionStore,
        store: PersistentStore,
        config: Optional[MemoryConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.session = session
        self.store = store
        self.config = config or MemoryConfig()
        self._clock = clock
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._running = False

    def configure(self, config: MemoryConfig) -> None:
        self.config = config

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def record_focus(self, subject: str, seconds: int = 1) -> None:
        if not self.enabled or not subject:
            return
        with self._lock:
            self._counts[subject] = self._counts.get(subject, 0) + seconds

    def session_counts(self) -> Dict[str, int]:
        return dict(self._counts)

    def publish(self) -> None:
        """Expose live counts to the session store for the current cycle."""
        self.session.set(TODAY_KEY, self.session_counts())

    def flush(self) -> int:
        """Merge pending ticks into each subject's memory layer.

        Returns the number of subjects updated.
        """
        if not self.enabled:
            return 0
        today = day_key(self._clock())

        # new ticks during the merge land in the fresh map
        with self._lock:
            snapshot, self._counts = self._counts, {}

        updated = 0
        for subject, seconds in snapshot.items():
            if seconds <= 0:
                continue
            existing = self.store.get(subject, MEMORY) or MemoryLayer(last_seen=today)
            recent = dict(existing.recent_days)
            day_count = existing.day_count
            if today not in recent:
                day_count += 1
            recent[today] = recent.get(today, 0) + seconds
            keep = sorted(recent, reverse=True)[:RECENT_DAYS]
            self.store.set(
                subject,
                MEMORY,
                MemoryLayer(
                    total_sec=existing.total_sec + seconds,
                    last_seen=today,
                    day_count=day_count,
                    recent_days={d: recent[d] for d in sorted(keep)},
                ),
            )
            updated += 1

        merged = dict(snapshot)
        for subject, seconds in self.session_counts().items():
            merged[subject] = merged.get(subject, 0) + seconds
        self.session.set(TODAY_KEY, merged)

        pruned = self._prune_old_subjects(today)
        LOG.debug("Memory flushed: %d subjects updated, %d pruned", updated, pruned)
        return updated

    def _prune_old_subjects(self, today: str) -> int:
        cutoff = (
            datetime.strptime(today, "%Y-%m-%d") - timedelta(days=self.config.retention_days)
        ).strftime("%Y-%m-%d")
        pruned = 0
        for subject in self.store.subjects():
            mem = self.store.get(subject, MEMORY)
            if mem is not None and mem.last_seen < cutoff:
                self.store.clear_subject(subject)
                pruned += 1
        return pruned

    # --- periodic flush ---

    def start(self) -> None:
        self.stop(final_flush=False)
        self._running = True
        self._schedule()
        LOG.info("Activity tracker started (flush every %.0fs)", self.config.flush_interval_s)

    def _schedule(self) -> None:
        if not self._running:
            return
        self._timer = threading.Timer(self.config.flush_interval_s, self._tick)
        self._timer.daemon = True
        self._timer.start()

    def _tick(self) -> None:
        try:
            self.flush()
        except Exception as e:
            LOG.error("Periodic memory flush failed: %s", e, exc_info=True)
        finally:
            self._schedule()

    def stop(self, final_flush: bool = True) -> None:
        self._running = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if final_flush:
            self.flush()

"""Orchestrator: runs one focus-evaluation cycle and assembles the context block."""

import time
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, List, Optional

from awctx.acquisition import AutonomousAcquisition
from awctx.config import RuntimeConfig
from awctx.knowledge import HIGH_CONFIDENCE, SummaryStore
from awctx.layers import ACQUIRED, KNOWLEDGE, MEMORY, SEARCH, VLM, SearchLayer
from awctx.pools import PersistentStore, SessionStore
from awctx.prompt import section_label
from awctx.search import EnrichmentService
from awctx.text import compact_subject, is_noise_subject, sanitize_secrets, subjects_related
from awctx.tracker import TODAY_KEY, ActivityTracker
from awctx.vision import ENRICHED_TITLE_KEY, VisionExtractor

LOG = logging.getLogger("aw-context-worker")

SEARCH_RESULTS_KEY = "search.results"
SEARCH_QUERY_KEY = "search.last_query"

TOTAL_BUDGET = 2500
MIN_TRUNCATED_SECTION = 20
MAX_SEARCH_TEXT = 500


@dataclass(frozen=True)
class Section:
    priority: int
    label: str
    text: str

    def render(self) -> str:
        return f"[{self.label}] {self.text}"


def pack_sections(sections: List[Section], budget: int = TOTAL_BUDGET) -> str:
    """
    Emit sections in priority order into a fixed character budget.

    A section that fits is included whole. The first one that does not fit
    is truncated into the remainder when more than 20 characters are left;
    either way emission stops there. Newline separators count against the
    budget. Long alphanumeric runs in the result are masked.
    """
    parts: List[str] = []
    remaining = budget
    for sec in sorted(sections, key=lambda s: s.priority):
        remaining -= 1  # leading newline
        if remaining <= 0:
            break
        formatted = sec.render()
        if len(formatted) <= remaining:
            parts.append(formatted)
            remaining -= len(formatted)
        elif remaining > MIN_TRUNCATED_SECTION:
            parts.append(formatted[:remaining])
            remaining = 0
            break
        else:
            break
    if not parts:
        return ""
    return sanitize_secrets("".join("\n" + p for p in parts))


class Orchestrator:
    """Coordinates tracking, enrichment and context assembly.

    Search and the knowledge update run inline; vision extraction and
    knowledge acquisition are submitted to a background pool and their
    failures are only logged. A background result is applied only while
    the subject it was started for is still the focused one.
    """

    def __init__(
        self,
        session: SessionStore,
        store: PersistentStore,
        tracker: ActivityTracker,
        search: EnrichmentService,
        knowledge: SummaryStore,
        vision: VisionExtractor,
        acquisition: Optional[AutonomousAcquisition] = None,
        config: Optional[RuntimeConfig] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.session = session
        self.store = store
        self.tracker = tracker
        self.search = search
        self.knowledge = knowledge
        self.vision = vision
        self.acquisition = acquisition
        self.config = config or RuntimeConfig()
        self._clock = clock
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="awctx")
        self._owns_executor = executor is None
        self._pending: List[Future] = []
        self._pending_lock = threading.Lock()
        self._last_search_time = 0.0
        self._last_subject: Optional[str] = None
        self._epoch = 0

    @classmethod
    def from_config(cls, config: RuntimeConfig, client=None, storage=None, clock=time.time, executor=None):
        """Build the full component graph from one runtime config."""
        session = SessionStore(max_entries=config.session_max_entries, clock=clock)
        store = PersistentStore(storage=storage, max_subjects=config.max_subjects)
        search = EnrichmentService(config.search)
        return cls(
            session=session,
            store=store,
            tracker=ActivityTracker(session, store, config.memory, clock=clock),
            search=search,
            knowledge=SummaryStore(store, client, config.knowledge, lang=config.lang, clock=clock),
            vision=VisionExtractor(session, store, client, config.vlm, lang=config.lang, clock=clock),
            acquisition=AutonomousAcquisition(
                store, client, search, config.knowledge_acq, lang=config.lang, clock=clock
            ),
            config=config,
            executor=executor,
            clock=clock,
        )

    # --- lifecycle ---

    def init(self, start_tracker: bool = True) -> None:
        self.store.load()
        if self.acquisition is not None:
            self.acquisition.init()
        if start_tracker:
            self.tracker.start()
        LOG.info("Orchestrator initialized (%d subjects)", self.store.subject_count)

    def reload_config(self, config: RuntimeConfig) -> None:
        self.config = config
        self.tracker.configure(config.memory)
        self.search.configure(config.search)
        self.knowledge.configure(config.knowledge)
        self.vision.configure(config.vlm)
        if self.acquisition is not None:
            self.acquisition.configure(config.knowledge_acq)
        self.session.max_entries = config.session_max_entries
        self.store.max_subjects = config.max_subjects

    def stop(self, timeout: float = 30.0) -> None:
        self.tracker.stop()
        self.wait_background(timeout)
        if self._owns_executor:
            self._executor.shutdown(wait=False)
        self.store.flush()
        LOG.info("Orchestrator stopped")

    # --- per-tick / per-request entry points ---

    def on_focus_tick(self, subject: str) -> None:
        self.tracker.record_focus(subject)

    def focus_time(self, subject: str) -> float:
        return (self.session.get(TODAY_KEY) or {}).get(subject, 0)

    def _cycle_guard(self) -> Callable[[], bool]:
        epoch = self._epoch
        return lambda: self._epoch == epoch

    def before_request(self, subject: str, image_b64: Optional[str] = None) -> str:
        """Run one focus-evaluation cycle and return the context block."""
        if not subject:
            return ""

        changed = self._last_subject is not None and self._last_subject != subject
        if changed:
            self._epoch += 1
            self.session.delete(ENRICHED_TITLE_KEY)
            if not subjects_related(self.session.get(SEARCH_QUERY_KEY) or "", subject):
                self.session.delete(SEARCH_RESULTS_KEY)
                self.session.delete(SEARCH_QUERY_KEY)

        self.tracker.publish()
        safe = sanitize_secrets(subject)
        LOG.debug(
            'before_request: "%s", focus=%ss, search=%s, knowledge=%s',
            safe,
            self.focus_time(subject),
            self.search.enabled,
            self.knowledge.enabled,
        )

        if self._should_search(subject):
            LOG.info("Triggering search for: %s", safe)
            result = self.search.search(safe)
            if result.success:
                self._last_search_time = self._clock()
                self.session.set(SEARCH_RESULTS_KEY, result.results)
                self.session.set(SEARCH_QUERY_KEY, subject)
                self.store.set(
                    subject,
                    SEARCH,
                    SearchLayer(results=result.results[:MAX_SEARCH_TEXT], cached_at=self._clock()),
                )
                self.knowledge.maybe_update(subject, result.results)
        elif self._last_subject != subject:
            last_query = self.session.get(SEARCH_QUERY_KEY)
            cached = self.session.get(SEARCH_RESULTS_KEY)
            if cached and last_query and subjects_related(last_query, subject):
                self.knowledge.maybe_update(subject, cached)

        self._last_subject = subject

        if image_b64:
            self._submit("vision", self.vision.maybe_extract, subject, image_b64, self._cycle_guard())

        acq = self.acquisition
        if acq is not None and acq.enabled:
            vlm = self.store.get(subject, VLM)
            focus = self.focus_time(subject)
            if vlm is not None and vlm.summary and focus >= acq.config.min_focus_s:
                self._submit(
                    "acquisition", acq.maybe_acquire, subject, vlm.summary, focus, self._cycle_guard()
                )
            self._submit("acquisition queue", acq.process_queue, acq.config.max_searches_per_request)

        self.session.prune()
        if self.store.is_dirty:
            self.store.flush()

        return self.build_context(subject)

    def _should_search(self, subject: str) -> bool:
        cfg = self.search.config
        if not self.search.enabled:
            return False
        if self._clock() - self._last_search_time < cfg.max_frequency_s:
            return False
        if is_noise_subject(subject):
            return False
        if self.focus_time(subject) < cfg.min_focus_s:
            return False
        if subject == self.session.get(SEARCH_QUERY_KEY):
            return False
        existing = self.store.query(subject, layer=KNOWLEDGE, max_results=1)
        if existing and existing[0].confidence > HIGH_CONFIDENCE:
            return False
        return True

    # --- background work ---

    def _submit(self, name: str, fn, *args) -> None:
        def job():
            try:
                fn(*args)
            except Exception as e:
                LOG.warning("%s error: %s", name, e, exc_info=LOG.isEnabledFor(logging.DEBUG))

        with self._pending_lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(self._executor.submit(job))

    def wait_background(self, timeout: Optional[float] = None) -> None:
        """Block until submitted background jobs finish (tests, shutdown)."""
        with self._pending_lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    # --- context assembly ---

    def build_context(self, subject: str) -> str:
        """Pack the prioritized context sections into the character budget."""
        lang = self.config.lang
        sections: List[Section] = []

        # P1: screen content
        enriched = self.session.get(ENRICHED_TITLE_KEY)
        if not enriched:
            hits = self.store.query(subject, layer=VLM, max_results=1, min_confidence=0.5)
            if hits and hits[0].data.enriched_title:
                enriched = hits[0].data.enriched_title
        if enriched:
            sections.append(Section(1, section_label("screen", lang), enriched))

        # P2: today's activity
        today = self.session.get(TODAY_KEY) or {}
        if today:
            top = sorted(today.items(), key=lambda kv: kv[1], reverse=True)[:5]
            text = ", ".join(f"{compact_subject(s)}: {sec}s" for s, sec in top)
            sections.append(Section(2, section_label("today", lang), text))

        # P3: usage history, merged by compact subject
        history = self._usage_history(subject)
        if history:
            sections.append(Section(3, section_label("history", lang), history))

        # P4: knowledge, vision keywords and acquired facts by relevance
        knowledge = self._knowledge_fragments(subject)
        if knowledge:
            sections.append(Section(4, section_label("knowledge", lang), knowledge))

        # P5: fresh or cached search results
        results = self.session.get(SEARCH_RESULTS_KEY)
        if results:
            sections.append(Section(5, section_label("related", lang), results[:MAX_SEARCH_TEXT]))
        else:
            cached = self.store.query(subject, layer=SEARCH, max_results=2, min_confidence=0.3)
            if cached:
                text = " | ".join(h.data.results for h in cached)[:MAX_SEARCH_TEXT]
                sections.append(Section(5, section_label("related", lang), text))

        return pack_sections(sections, self.config.context_budget)

    def _usage_history(self, subject: str) -> str:
        merged = []
        for hit in self.store.query(subject, layer=MEMORY, max_results=5, min_confidence=0.3):
            compact = compact_subject(hit.subject)
            for m in merged:
                if m["compact"] == compact:
                    m["total_sec"] += hit.data.total_sec
                    m["day_count"] = max(m["day_count"], hit.data.day_count)
                    break
            else:
                merged.append(
                    {"compact": compact, "total_sec": hit.data.total_sec, "day_count": hit.data.day_count}
                )
        return "; ".join(
            f"{m['compact']}: {m['total_sec']}s, {m['day_count']}d" for m in merged[:3]
        )

    def _knowledge_fragments(self, subject: str) -> str:
        fragments = []
        for h in self.store.query(subject, layer=KNOWLEDGE, max_results=3, min_confidence=0.3):
            summary = h.data.summary
            fragments.append((h.confidence, summary if h.confidence > HIGH_CONFIDENCE else summary[:200]))
        for h in self.store.query(subject, layer=VLM, max_results=2, min_confidence=0.3):
            if h.data.summary:
                fragments.append((h.confidence, h.data.summary[:150]))
        for h in self.store.query(subject, layer=ACQUIRED, max_results=3, min_confidence=0.2):
            if h.data.confidence is not None and h.data.confidence <= 0.3:
                continue
            if h.data.summary:
                fragments.append((h.confidence, h.data.summary[:200]))
        fragments.sort(key=lambda f: f[0], reverse=True)
        return " | ".join(text for _, text in fragments)

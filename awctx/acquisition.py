"""Autonomous knowledge acquisition.

Vision keywords -> LLM topic extraction -> LLM search terms -> queued
searches -> ``acquired`` layer. The task queue survives restarts inside
the persistent store; acquired facts lose confidence as they age.
"""

import time
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from awctx.config import AcquisitionConfig
from awctx.errors import ParseError
from awctx.layers import (
    ACQUIRED,
    QUEUE,
    QUEUE_SUBJECT,
    TERMS,
    AcquiredLayer,
    AcquisitionTask,
    QueueLayer,
    TaskStatus,
    TermsLayer,
)
from awctx.pools import PersistentStore
from awctx.prompt import build_terms_messages, build_topic_messages, extract_json_array
from awctx.search import EnrichmentService

LOG = logging.getLogger("aw-context-worker")

DAY_S = 86400.0
WEEK_S = 7 * DAY_S
MAX_TOPICS = 3
MAX_RETRIES = 3
VERIFY_MIN_HITS = 3
HIGH_CONFIDENCE = 0.8
LOW_CONFIDENCE = 0.2
MIN_RESULT_LEN = 10
MAX_ACQUIRED_SUMMARY = 250
DECAY_FLOOR = 0.1


@dataclass
class KnownTopic:
    generated_at: float
    lang: str = "en"
    verified: bool = False


class AutonomousAcquisition:
    """Background topic discovery and bounded-rate search execution."""

    def __init__(
        self,
        store: PersistentStore,
        client=None,
        search: Optional[EnrichmentService] = None,
        config: Optional[AcquisitionConfig] = None,
        lang: str = "en",
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.client = client
        self.search = search
        self.config = config or AcquisitionConfig()
        self.lang = lang
        self._clock = clock
        self._queue: List[AcquisitionTask] = []
        self._known: Dict[str, KnownTopic] = {}
        self._generating = False
        self._processing = False
        self._lock = threading.RLock()

    def configure(self, config: AcquisitionConfig) -> None:
        self.config = config

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def search_enabled(self) -> bool:
        return self.search is not None and self.search.enabled

    # --- startup ---

    def init(self) -> None:
        """Load the persisted queue, rebuild the topic index, decay old facts."""
        self._load_queue()
        for subject in self.store.subjects():
            terms = self.store.get(subject, TERMS)
            if terms is not None:
                self._known[subject] = KnownTopic(
                    generated_at=terms.generated_at, lang=terms.lang, verified=terms.verified
                )
        self.decay_knowledge()
        LOG.info("Knowledge acquisition initialized, queue: %d pending", self.queue_status()["pending"])

    def _load_queue(self) -> None:
        data = self.store.get(QUEUE_SUBJECT, QUEUE)
        with self._lock:
            self._queue = list(data.tasks) if data is not None else []

    def _persist_queue(self) -> None:
        with self._lock:
            tasks = tuple(self._queue)
        self.store.set(QUEUE_SUBJECT, QUEUE, QueueLayer(tasks=tasks, last_updated=self._clock()))

    # --- stage (a): topic and term generation ---

    def maybe_acquire(
        self,
        subject: str,
        keywords: str,
        focus_s: float,
        is_current: Optional[Callable[[], bool]] = None,
    ) -> int:
        """Derive topics from vision keywords and enqueue search tasks.

        Args:
            subject: Subject the keywords belong to (for logging)
            keywords: Vision keyword summary
            focus_s: Seconds the subject has been focused today
            is_current: Returns False once the originating cycle is superseded

        Returns:
            Number of tasks added to the queue
        """
        if not self.enabled or not keywords or self.client is None:
            return 0
        if not self.search_enabled or focus_s < self.config.min_focus_s:
            return 0
        with self._lock:
            if self._generating:
                return 0
            self._generating = True

        added = 0
        try:
            topics = self._ask_list(build_topic_messages(keywords))
            for topic in topics[:MAX_TOPICS]:
                if not isinstance(topic, str) or len(topic.strip()) < 2:
                    continue
                topic = topic.strip()
                if not self._topic_due(topic):
                    continue

                now = self._clock()
                stamp = datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M")
                terms = self._ask_list(build_terms_messages(topic, stamp, self.lang))
                valid = [
                    t.strip()
                    for t in terms
                    if isinstance(t, str) and len(t.strip()) >= 2
                ][: self.config.max_terms_per_topic]
                if not valid:
                    continue
                if is_current is not None and not is_current():
                    LOG.debug("Discarding superseded topics for %s", subject)
                    break

                added += self._enqueue(topic, valid, now)
                self._remember_topic(topic, valid, now)
                LOG.info("Generated %d terms for: %s", len(valid), topic)
            self._persist_queue()
        except Exception as e:
            LOG.warning("Topic generation failed: %s", e)
        finally:
            self._generating = False
        return added

    def _ask_list(self, messages) -> List:
        try:
            return extract_json_array(self.client.complete(messages))
        except ParseError as e:
            LOG.debug("Unparseable list response: %s", e)
            return []

    def _topic_due(self, topic: str) -> bool:
        known = self._known.get(topic)
        if known is None:
            return True
        cooldown = self.config.term_cooldown_s
        if known.verified:
            cooldown *= self.config.verified_cooldown_multiplier
        return self._clock() - known.generated_at >= cooldown

    def _enqueue(self, topic: str, terms: List[str], now: float) -> int:
        added = 0
        with self._lock:
            existing = {(t.topic, t.term) for t in self._queue}
            for term in terms:
                if (topic, term) in existing:
                    continue
                self._queue.append(AcquisitionTask(topic=topic, term=term, added_at=now))
                existing.add((topic, term))
                added += 1
        return added

    def _remember_topic(self, topic: str, terms: List[str], now: float) -> None:
        previous = self.store.get(topic, TERMS)
        verified = bool(previous and previous.verified) or bool(
            self._known.get(topic) and self._known[topic].verified
        )
        self._known[topic] = KnownTopic(generated_at=now, lang=self.lang, verified=verified)
        self.store.set(
            topic,
            TERMS,
            TermsLayer(
                terms=tuple(terms),
                generated_at=now,
                lang=self.lang,
                verified=verified,
                verified_at=previous.verified_at if previous else None,
            ),
        )

    # --- stage (b): queue execution ---

    def process_queue(self, max_tasks: Optional[int] = None) -> int:
        """Run up to ``max_tasks`` pending searches. Returns tasks attempted."""
        if not self.enabled or not self.search_enabled:
            return 0
        limit = max_tasks or self.config.max_searches_per_request
        with self._lock:
            if self._processing:
                return 0
            pending = [t for t in self._queue if t.status == TaskStatus.PENDING][:limit]
            if not pending:
                return 0
            self._processing = True

        processed = 0
        try:
            for task in pending:
                self._replace_task(task, self._run_task(task))
                processed += 1

            now = self._clock()
            with self._lock:
                self._queue = [
                    t
                    for t in self._queue
                    if t.status != TaskStatus.FAILED
                    and not (t.status == TaskStatus.DONE and now - t.added_at > DAY_S)
                ]
            self._check_verified_topics()
            self._prune_expired_acquired()
            self._persist_queue()
        finally:
            self._processing = False
        return processed

    def _run_task(self, task: AcquisitionTask) -> AcquisitionTask:
        query = task.query
        result = self.search.search(query)
        if not result.success:
            retries = task.retries + 1
            status = TaskStatus.FAILED if retries >= MAX_RETRIES else TaskStatus.PENDING
            LOG.debug("Search failed for %s (%d/%d): %s", query, retries, MAX_RETRIES, result.error)
            return task.evolve(retries=retries, status=status)

        text = result.results or ""
        confidence = HIGH_CONFIDENCE if len(text) > MIN_RESULT_LEN else LOW_CONFIDENCE
        self.store.set(
            query,
            ACQUIRED,
            AcquiredLayer(
                summary=text[:MAX_ACQUIRED_SUMMARY],
                topic=task.topic,
                term=task.term,
                confidence=confidence,
                original_confidence=confidence,
                searched_at=self._clock(),
            ),
        )
        LOG.info("Searched: %s -> confidence %.1f", query, confidence)
        return task.evolve(status=TaskStatus.DONE)

    def _replace_task(self, old: AcquisitionTask, new: AcquisitionTask) -> None:
        with self._lock:
            for i, t in enumerate(self._queue):
                if t.topic == old.topic and t.term == old.term:
                    self._queue[i] = new
                    return

    def _check_verified_topics(self) -> None:
        """A topic with enough high-confidence done searches becomes verified."""
        counts: Dict[str, int] = {}
        with self._lock:
            done = [t for t in self._queue if t.status == TaskStatus.DONE]
        for task in done:
            acquired = self.store.get(task.query, ACQUIRED)
            if acquired is not None and acquired.confidence >= HIGH_CONFIDENCE:
                counts[task.topic] = counts.get(task.topic, 0) + 1
        for topic, hits in counts.items():
            if hits < VERIFY_MIN_HITS:
                continue
            known = self._known.get(topic)
            if known is not None and known.verified:
                continue
            now = self._clock()
            if known is None:
                known = self._known[topic] = KnownTopic(generated_at=now, lang=self.lang)
            known.verified = True
            existing = self.store.get(topic, TERMS) or TermsLayer(
                generated_at=known.generated_at, lang=known.lang
            )
            self.store.set(topic, TERMS, existing.evolve(verified=True, verified_at=now))
            LOG.info("Topic verified: %s", topic)

    def _prune_expired_acquired(self) -> None:
        max_age = self.config.retention_days * DAY_S
        now = self._clock()
        for subject in self.store.subjects():
            acquired = self.store.get(subject, ACQUIRED)
            if acquired is not None and acquired.searched_at and now - acquired.searched_at > max_age:
                self.store.delete(subject, ACQUIRED)

    # --- maintenance ---

    def decay_knowledge(self) -> int:
        """Lower confidence of acquired facts by a fixed step per elapsed week.

        The step is applied to the original confidence, so repeated runs do
        not compound. Facts decayed to the floor are removed. Returns the
        number of entries changed or removed.
        """
        now = self._clock()
        changed = 0
        for subject in self.store.subjects():
            acquired = self.store.get(subject, ACQUIRED)
            if acquired is None or not acquired.searched_at:
                continue
            age = now - acquired.searched_at
            if age < WEEK_S:
                continue
            weeks = int(age // WEEK_S)
            original = acquired.original_confidence
            if original is None:
                original = acquired.confidence if acquired.confidence is not None else HIGH_CONFIDENCE
            decayed = round(original - weeks * self.config.decay_per_week, 2)
            if decayed <= DECAY_FLOOR:
                self.store.delete(subject, ACQUIRED)
                LOG.info("Expired acquired knowledge: %s", subject)
                changed += 1
            elif decayed < acquired.confidence:
                self.store.set(
                    subject,
                    ACQUIRED,
                    acquired.evolve(confidence=decayed, original_confidence=original),
                )
                changed += 1
        self._prune_known_topics()
        return changed

    def _prune_known_topics(self) -> None:
        cap = self.config.max_known_topics
        if len(self._known) <= cap:
            return
        ordered = sorted(self._known, key=lambda t: self._known[t].generated_at)
        for topic in ordered[: len(ordered) - cap]:
            del self._known[topic]

    # --- introspection ---

    def known_topics(self) -> Dict[str, KnownTopic]:
        return dict(self._known)

    def queue(self) -> List[AcquisitionTask]:
        with self._lock:
            return list(self._queue)

    def queue_status(self) -> Dict[str, int]:
        tasks = self.queue()
        return {
            "pending": sum(1 for t in tasks if t.status == TaskStatus.PENDING),
            "done": sum(1 for t in tasks if t.status == TaskStatus.DONE),
            "failed": sum(1 for t in tasks if t.status == TaskStatus.FAILED),
            "total": len(tasks),
        }

"""Two-tier context store.

SessionStore holds transient facts for the current focus session.
PersistentStore keeps one layered record per subject and answers fuzzy
retrieval queries over subjects by token-set similarity.
"""

import time
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from awctx.errors import StorageError
from awctx.layers import (
    MEMORY,
    VLM,
    RESERVED_PREFIX,
    LayerPayload,
    check_layer,
    decode_record,
    encode_record,
)
from awctx.text import jaccard, keyword_tokens, tokenize_subject

LOG = logging.getLogger("aw-context-worker")


@dataclass
class SessionEntry:
    key: str
    value: Any
    updated_at: float


class SessionStore:
    """Process-lifetime key/value store, pruned by oldest update."""

    def __init__(self, max_entries: int = 50, clock: Callable[[], float] = time.time):
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, SessionEntry] = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = SessionEntry(key, value, self._clock())

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._entries.get(key)
        return entry.value if entry is not None else default

    def age(self, key: str) -> float:
        """Seconds since the key was last written; inf when absent."""
        entry = self._entries.get(key)
        if entry is None:
            return float("inf")
        return self._clock() - entry.updated_at

    def has(self, key: str) -> bool:
        return key in self._entries

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries = {}

    def prune(self, max_entries: Optional[int] = None) -> int:
        """Evict least recently updated entries above the cap."""
        cap = self.max_entries if max_entries is None else max_entries
        with self._lock:
            if len(self._entries) <= cap:
                return 0
            ordered = sorted(self._entries.values(), key=lambda e: e.updated_at)
            victims = ordered[: len(ordered) - cap]
            for entry in victims:
                del self._entries[entry.key]
        return len(victims)

    def __len__(self) -> int:
        return len(self._entries)


@dataclass(frozen=True)
class RetrievalHit:
    subject: str
    confidence: float
    data: Any


class PersistentStore:
    """Durable per-subject layered store with lightweight retrieval."""

    def __init__(self, storage=None, max_subjects: int = 200):
        self.storage = storage
        self.max_subjects = max_subjects
        self._subjects: Dict[str, Dict[str, LayerPayload]] = {}
        self._dirty = False
        self._flushing = False
        self._lock = threading.RLock()

    # --- record access ---

    def set(self, subject: str, layer: str, payload: Optional[LayerPayload]) -> None:
        """Replace one layer; None or an empty payload removes it."""
        if payload is None or payload.is_empty():
            self.delete(subject, layer)
            return
        check_layer(layer, payload)
        with self._lock:
            record = dict(self._subjects.get(subject, {}))
            record[layer] = payload
            self._subjects[subject] = record
            self._dirty = True

    def get(self, subject: str, layer: str) -> Optional[LayerPayload]:
        record = self._subjects.get(subject)
        return record.get(layer) if record else None

    def has(self, subject: str, layer: str) -> bool:
        return self.get(subject, layer) is not None

    def delete(self, subject: str, layer: str) -> None:
        with self._lock:
            record = self._subjects.get(subject)
            if record is not None and layer in record:
                record = {k: v for k, v in record.items() if k != layer}
                if record:
                    self._subjects[subject] = record
                else:
                    del self._subjects[subject]
            self._dirty = True

    def clear_subject(self, subject: str) -> None:
        with self._lock:
            self._subjects.pop(subject, None)
            self._dirty = True

    def subjects(self) -> List[str]:
        return list(self._subjects)

    def record(self, subject: str) -> Dict[str, LayerPayload]:
        return dict(self._subjects.get(subject, {}))

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    @property
    def subject_count(self) -> int:
        return len(self._subjects)

    # --- retrieval ---

    def query(
        self,
        subject: str,
        layer: Optional[str] = None,
        max_results: int = 5,
        min_confidence: float = 0.2,
    ) -> List[RetrievalHit]:
        """
        Match a live subject against stored subjects.

        Args:
            subject: Current subject
            layer: Only return hits carrying this layer (payload as data);
                   None returns the whole record
            max_results: Truncate to this many hits
            min_confidence: Drop hits scoring below this

        Returns:
            Hits sorted by descending confidence; ties keep store order
        """
        query_tokens = tokenize_subject(subject)
        if not query_tokens:
            return []
        hits = []
        for stored, record in list(self._subjects.items()):
            confidence = jaccard(query_tokens, self._enriched_tokens(stored, record))
            if confidence < min_confidence:
                continue
            data = record.get(layer) if layer else dict(record)
            if data:
                hits.append(RetrievalHit(stored, confidence, data))
        hits.sort(key=lambda h: h.confidence, reverse=True)
        return hits[:max_results]

    @staticmethod
    def _enriched_tokens(subject: str, record: Dict[str, LayerPayload]) -> List[str]:
        """Subject tokens plus the subject's vision keywords and enriched title."""
        tokens = tokenize_subject(subject)
        vlm = record.get(VLM)
        if vlm is not None:
            extra = keyword_tokens(vlm.summary) + tokenize_subject(vlm.enriched_title)
            for t in extra:
                if t not in tokens:
                    tokens.append(t)
        return tokens

    # --- persistence ---

    def prune(self, max_subjects: Optional[int] = None) -> int:
        """Drop least recently seen subjects until at or under the cap."""
        cap = self.max_subjects if max_subjects is None else max_subjects
        with self._lock:
            total = len(self._subjects)
            if total <= cap:
                return 0
            scored = []
            for subject, record in self._subjects.items():
                if subject.startswith(RESERVED_PREFIX):
                    continue
                mem = record.get(MEMORY)
                scored.append((mem.last_seen if mem else "", subject))
            # stable: equal last_seen keeps insertion order
            scored.sort(key=lambda x: x[0])
            to_remove = total - cap
            for _, subject in scored[:to_remove]:
                del self._subjects[subject]
            self._dirty = True
        removed = min(to_remove, len(scored))
        LOG.info("Pruned %d subjects from persistent store", removed)
        return removed

    def load(self) -> None:
        """Replace in-memory state with the stored mapping."""
        if self.storage is None:
            return
        try:
            raw = self.storage.load()
        except StorageError as e:
            LOG.warning("Failed to load persistent store: %s", e)
            return
        subjects = {}
        for subject, rec in (raw or {}).items():
            record = decode_record(subject, rec)
            if record:
                subjects[subject] = record
        with self._lock:
            self._subjects = subjects
            self._dirty = False
        LOG.info("Loaded %d subjects", len(subjects))

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {s: encode_record(rec) for s, rec in self._subjects.items()}

    def flush(self) -> bool:
        """Save when dirty. A flush requested during another flush is dropped."""
        with self._lock:
            if not self._dirty or self._flushing:
                return False
            self._flushing = True
        try:
            self.prune()
            with self._lock:
                data = self.snapshot()
                self._dirty = False
            if self.storage is None:
                return True
            try:
                self.storage.save(data)
            except StorageError as e:
                self._dirty = True
                LOG.warning("Failed to flush persistent store: %s", e)
                return False
            return True
        finally:
            self._flushing = False

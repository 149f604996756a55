"""Tests for SessionStore and PersistentStore: layers, retrieval, flush, prune."""

import pytest

from awctx.errors import StorageError
from awctx.layers import (
    KNOWLEDGE,
    MEMORY,
    QUEUE,
    QUEUE_SUBJECT,
    VLM,
    AcquisitionTask,
    KnowledgeLayer,
    MemoryLayer,
    QueueLayer,
    VlmLayer,
)
from awctx.pools import PersistentStore, SessionStore
from awctx.utils.state import MemoryStorage


class FailingStorage:
    def __init__(self):
        self.saves = 0

    def load(self):
        raise StorageError("disk gone")

    def save(self, data):
        self.saves += 1
        raise StorageError("disk full")


# ============================================================================
# SessionStore
# ============================================================================


def test_session_set_get_delete(session):
    session.set("search.results", "abc")
    assert session.has("search.results")
    assert session.get("search.results") == "abc"
    session.delete("search.results")
    assert session.get("search.results") is None
    assert session.get("missing", 5) == 5


def test_session_prune_evicts_oldest_updates(clock):
    s = SessionStore(max_entries=2, clock=clock)
    s.set("a", 1)
    clock.advance(1)
    s.set("b", 2)
    clock.advance(1)
    s.set("c", 3)
    clock.advance(1)
    s.set("a", 10)  # refreshed, now newest
    assert s.prune() == 1
    assert not s.has("b")
    assert s.get("a") == 10 and s.get("c") == 3


def test_session_age(session, clock):
    session.set("k", 1)
    clock.advance(7)
    assert session.age("k") == 7
    assert session.age("nope") == float("inf")


# ============================================================================
# PersistentStore records
# ============================================================================


def test_set_and_get_layer(store):
    store.set("Notepad", MEMORY, MemoryLayer(total_sec=5, last_seen="2026-03-02"))
    assert store.get("Notepad", MEMORY).total_sec == 5
    assert store.has("Notepad", MEMORY)
    assert store.is_dirty


def test_wrong_payload_type_rejected(store):
    with pytest.raises(TypeError):
        store.set("Notepad", MEMORY, KnowledgeLayer(summary="x"))


def test_empty_payload_removes_only_layer_and_record(store):
    store.set("Notepad", KNOWLEDGE, KnowledgeLayer(summary="text editor"))
    store.set("Notepad", KNOWLEDGE, KnowledgeLayer(summary=""))
    assert "Notepad" not in store.subjects()
    assert store.subject_count == 0


def test_delete_keeps_record_with_remaining_layers(store):
    store.set("Notepad", KNOWLEDGE, KnowledgeLayer(summary="text editor"))
    store.set("Notepad", MEMORY, MemoryLayer(total_sec=1, last_seen="2026-03-02"))
    store.delete("Notepad", KNOWLEDGE)
    assert store.record("Notepad").keys() == {MEMORY}
    store.set("Notepad", MEMORY, None)
    assert store.subjects() == []


def test_update_replaces_whole_layer(store):
    first = MemoryLayer(total_sec=1, last_seen="2026-03-01", recent_days={"2026-03-01": 1})
    store.set("Notepad", MEMORY, first)
    held = store.get("Notepad", MEMORY)
    store.set("Notepad", MEMORY, first.evolve(total_sec=9))
    assert held.total_sec == 1
    assert store.get("Notepad", MEMORY).total_sec == 9


# ============================================================================
# Retrieval
# ============================================================================


def test_query_notepad_scenario(store):
    store.set("notepad untitled", MEMORY, MemoryLayer(total_sec=40, last_seen="2026-03-02"))
    hits = store.query("Notepad - file.txt", layer=MEMORY, min_confidence=0.3)
    assert len(hits) == 1
    assert hits[0].subject == "notepad untitled"
    # {"notepad", "file.txt"} vs {"notepad"}
    assert hits[0].confidence == pytest.approx(0.5)
    assert hits[0].data.total_sec == 40


def test_query_identical_and_disjoint(store):
    store.set("React Tutorial", MEMORY, MemoryLayer(total_sec=1, last_seen="2026-03-02"))
    store.set("Budget Spreadsheet", MEMORY, MemoryLayer(total_sec=1, last_seen="2026-03-02"))
    hits = store.query("React Tutorial", layer=MEMORY, min_confidence=0.0)
    by_subject = {h.subject: h.confidence for h in hits}
    assert by_subject["React Tutorial"] == 1.0
    assert "Budget Spreadsheet" not in by_subject or by_subject["Budget Spreadsheet"] == 0.0


def test_query_sorted_filtered_truncated(store):
    store.set("react hooks guide", KNOWLEDGE, KnowledgeLayer(summary="a"))
    store.set("react hooks", KNOWLEDGE, KnowledgeLayer(summary="b"))
    store.set("react", KNOWLEDGE, KnowledgeLayer(summary="c"))
    hits = store.query("react hooks", layer=KNOWLEDGE, max_results=2)
    assert [h.subject for h in hits] == ["react hooks", "react hooks guide"]
    confidences = [h.confidence for h in store.query("react hooks", layer=KNOWLEDGE)]
    assert confidences == sorted(confidences, reverse=True)


def test_query_skips_subjects_without_layer(store):
    store.set("react hooks", MEMORY, MemoryLayer(total_sec=1, last_seen="2026-03-02"))
    assert store.query("react hooks", layer=KNOWLEDGE) == []
    assert store.query("react hooks")[0].data.keys() == {MEMORY}


def test_query_uses_vision_keywords(store):
    store.set("Editor", VLM, VlmLayer(summary="python, asyncio", enriched_title="Editor"))
    hits = store.query("python asyncio", layer=VLM, min_confidence=0.3)
    assert hits and hits[0].subject == "Editor"


def test_query_does_not_mutate(store):
    store.set("React", KNOWLEDGE, KnowledgeLayer(summary="x"))
    store.flush()
    store.query("React", layer=KNOWLEDGE)
    assert not store.is_dirty


# ============================================================================
# Flush / load / prune
# ============================================================================


def test_flush_only_when_dirty(store, storage):
    assert store.flush() is False
    store.set("Notepad", MEMORY, MemoryLayer(total_sec=1, last_seen="2026-03-02"))
    assert store.flush() is True
    assert storage.saves == 1
    assert store.flush() is False
    assert storage.data["Notepad"]["memory"]["totalSec"] == 1


def test_flush_dropped_while_in_progress(store, storage):
    store.set("Notepad", MEMORY, MemoryLayer(total_sec=1, last_seen="2026-03-02"))
    store._flushing = True
    assert store.flush() is False
    assert storage.saves == 0
    assert store.is_dirty


def test_failed_flush_keeps_dirty():
    store = PersistentStore(storage=FailingStorage())
    store.set("Notepad", MEMORY, MemoryLayer(total_sec=1, last_seen="2026-03-02"))
    assert store.flush() is False
    assert store.is_dirty


def test_load_failure_keeps_serving():
    store = PersistentStore(storage=FailingStorage())
    store.load()
    assert store.subject_count == 0


def test_roundtrip_through_storage(storage):
    first = PersistentStore(storage=storage)
    task = AcquisitionTask(topic="asyncio", term="event loop", added_at=5.0)
    first.set(QUEUE_SUBJECT, QUEUE, QueueLayer(tasks=(task,), last_updated=5.0))
    first.set("Editor", VLM, VlmLayer(summary="kw", enriched_title="Title"))
    first.flush()

    second = PersistentStore(storage=storage)
    second.load()
    assert second.get(QUEUE_SUBJECT, QUEUE).tasks == (task,)
    assert second.get("Editor", VLM).enriched_title == "Title"


def test_load_skips_unknown_and_malformed_layers():
    storage = MemoryStorage(
        {
            "Notepad": {"memory": {"totalSec": 3}, "mystery": {"x": 1}},
            "Broken": {"memory": 5},
        }
    )
    store = PersistentStore(storage=storage)
    store.load()
    assert store.get("Notepad", MEMORY).total_sec == 3
    assert "Broken" not in store.subjects()


def test_prune_by_last_seen_exempts_reserved(storage):
    store = PersistentStore(storage=storage, max_subjects=2)
    store.set(QUEUE_SUBJECT, QUEUE, QueueLayer(tasks=(AcquisitionTask("t", "x"),)))
    store.set("old", MEMORY, MemoryLayer(total_sec=1, last_seen="2026-01-01"))
    store.set("no-memory", KNOWLEDGE, KnowledgeLayer(summary="s"))
    store.set("new", MEMORY, MemoryLayer(total_sec=1, last_seen="2026-03-01"))
    assert store.prune() == 2
    assert set(store.subjects()) == {QUEUE_SUBJECT, "new"}

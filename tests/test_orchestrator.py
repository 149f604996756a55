"""Tests for the Orchestrator cycle and context packing."""

import logging

from awctx.acquisition import AutonomousAcquisition
from awctx.config import (
    AcquisitionConfig,
    KnowledgeConfig,
    RuntimeConfig,
    SearchConfig,
    VisionConfig,
)
from awctx.knowledge import SummaryStore
from awctx.layers import (
    ACQUIRED,
    KNOWLEDGE,
    MEMORY,
    SEARCH,
    VLM,
    AcquiredLayer,
    KnowledgeLayer,
    MemoryLayer,
    SearchLayer,
    VlmLayer,
)
from awctx.orchestrator import (
    SEARCH_QUERY_KEY,
    SEARCH_RESULTS_KEY,
    Orchestrator,
    Section,
    pack_sections,
)
from awctx.pools import PersistentStore, SessionStore
from awctx.text import SECRET_MASK
from awctx.tracker import ActivityTracker
from awctx.vision import ENRICHED_TITLE_KEY, VisionExtractor
from conftest import FakeLLM, FakeSearch, InlineExecutor

IMAGE = "aGVsbG8="


def make_orch(clock, storage, llm=None, search=None, config=None):
    cfg = config or RuntimeConfig()
    session = SessionStore(clock=clock)
    store = PersistentStore(storage=storage)
    search = search or FakeSearch(enabled=False)
    return Orchestrator(
        session=session,
        store=store,
        tracker=ActivityTracker(session, store, cfg.memory, clock=clock),
        search=search,
        knowledge=SummaryStore(store, llm, cfg.knowledge, lang=cfg.lang, clock=clock),
        vision=VisionExtractor(session, store, llm, cfg.vlm, lang=cfg.lang, clock=clock),
        acquisition=AutonomousAcquisition(store, llm, search, cfg.knowledge_acq, lang=cfg.lang, clock=clock),
        config=cfg,
        executor=InlineExecutor(),
        clock=clock,
    )


def tick(orch, subject, n):
    for _ in range(n):
        orch.on_focus_tick(subject)


# ============================================================================
# Packing
# ============================================================================


def test_pack_includes_fitting_sections_then_truncates():
    sections = [
        Section(2, "B", "b" * 40),
        Section(1, "A", "a" * 20),
        Section(3, "C", "c"),
    ]
    out = pack_sections(sections, budget=50)
    assert out == "\n[A] " + "a" * 20 + "\n" + ("[B] " + "b" * 40)[:24]
    assert len(out) == 50


def test_pack_stops_when_remainder_too_small():
    sections = [Section(1, "A", "a" * 20), Section(2, "B", "b" * 40), Section(3, "C", "c")]
    assert pack_sections(sections, budget=40) == "\n[A] " + "a" * 20


def test_pack_masks_credential_like_runs():
    out = pack_sections([Section(1, "A", "token abcdefghijklmnopqrstuvwxyz0123")])
    assert SECRET_MASK in out
    assert "abcdefghijklmnopqrstuvwxyz" not in out


def test_pack_empty():
    assert pack_sections([]) == ""


# ============================================================================
# Context assembly
# ============================================================================


def test_empty_context_without_data(clock, storage):
    orch = make_orch(clock, storage)
    assert orch.build_context("test") == ""


def test_context_includes_today_activity(clock, storage):
    orch = make_orch(clock, storage)
    orch.session.set("memory.today", {"Chrome": 60, "VSCode": 120})
    ctx = orch.build_context("test")
    assert ctx.startswith("\n[Today's Activity] ")
    assert ctx.index("VSCode") < ctx.index("Chrome")


def test_context_includes_search_results(clock, storage):
    orch = make_orch(clock, storage)
    orch.session.set(SEARCH_RESULTS_KEY, "React is a JavaScript library")
    assert "[Related Info] React is a JavaScript library" in orch.build_context("React")


def test_context_falls_back_to_cached_search_layer(clock, storage):
    orch = make_orch(clock, storage)
    orch.store.set("React docs", SEARCH, SearchLayer(results="cached result", cached_at=clock()))
    assert "cached result" in orch.build_context("React docs")


def test_context_includes_knowledge_and_skips_weak_acquired(clock, storage):
    orch = make_orch(clock, storage)
    orch.store.set("react hooks", KNOWLEDGE, KnowledgeLayer(summary="React is for building UIs"))
    orch.store.set("react hooks", ACQUIRED, AcquiredLayer(summary="thin fact", confidence=0.2))
    orch.store.set("react hooks guide", ACQUIRED, AcquiredLayer(summary="solid fact", confidence=0.8))
    ctx = orch.build_context("react hooks")
    assert "[Knowledge] React is for building UIs" in ctx
    assert "solid fact" in ctx
    assert "thin fact" not in ctx


def test_usage_history_merged_by_compact_subject(clock, storage):
    orch = make_orch(clock, storage)
    orch.store.set(
        "Lecture 3 - YouTube - Google Chrome", MEMORY, MemoryLayer(total_sec=100, last_seen="2026-03-02", day_count=4)
    )
    orch.store.set(
        "Lecture 3 - YouTube - Firefox", MEMORY, MemoryLayer(total_sec=50, last_seen="2026-03-02", day_count=2)
    )
    ctx = orch.build_context("Lecture 3 - YouTube")
    assert "[Usage History] Lecture 3: 150s, 4d" in ctx


def test_enriched_title_from_session_or_store(clock, storage):
    orch = make_orch(clock, storage)
    orch.store.set("Editor main.py", VLM, VlmLayer(summary="python", enriched_title="Editing main.py"))
    assert "[Screen Content] Editing main.py" in orch.build_context("Editor main.py")
    orch.session.set(ENRICHED_TITLE_KEY, "Live title")
    assert "[Screen Content] Live title" in orch.build_context("Editor main.py")


def test_sections_in_priority_order(clock, storage):
    orch = make_orch(clock, storage)
    orch.session.set(SEARCH_RESULTS_KEY, "search text")
    orch.session.set("memory.today", {"Editor": 5})
    orch.session.set(ENRICHED_TITLE_KEY, "Title")
    ctx = orch.build_context("Editor")
    assert ctx.index("[Screen Content]") < ctx.index("[Today's Activity]") < ctx.index("[Related Info]")


def test_localized_labels(clock, storage):
    orch = make_orch(clock, storage, config=RuntimeConfig(lang="zh"))
    orch.session.set("memory.today", {"Editor": 5})
    assert "[今日活动]" in orch.build_context("Editor")


def test_budget_never_exceeded(clock, storage):
    orch = make_orch(clock, storage)
    orch.session.set(ENRICHED_TITLE_KEY, "word " * 1000)
    orch.session.set("memory.today", {"Editor": 5})
    orch.session.set(SEARCH_RESULTS_KEY, "result " * 1000)
    ctx = orch.build_context("Editor")
    assert len(ctx) == 2500
    assert "[Today's Activity]" not in ctx


def test_assembly_is_idempotent(clock, storage):
    orch = make_orch(clock, storage)
    orch.session.set("memory.today", {"Editor": 5, "Browser": 3})
    orch.session.set(SEARCH_RESULTS_KEY, "some results")
    orch.store.set("Editor", KNOWLEDGE, KnowledgeLayer(summary="An editor"))
    assert orch.build_context("Editor") == orch.build_context("Editor")


# ============================================================================
# before_request cycle
# ============================================================================


def test_search_triggers_knowledge_and_caches(clock, storage):
    cfg = RuntimeConfig(knowledge=KnowledgeConfig(enabled=True))
    search = FakeSearch(config=SearchConfig(enabled=True, max_frequency_s=30, min_focus_s=10))
    llm = FakeLLM("React summary")
    orch = make_orch(clock, storage, llm=llm, search=search, config=cfg)
    tick(orch, "React Tutorial", 12)

    ctx = orch.before_request("React Tutorial")
    assert search.queries == ["React Tutorial"]
    assert orch.session.get(SEARCH_QUERY_KEY) == "React Tutorial"
    assert orch.store.get("React Tutorial", SEARCH).results.startswith("Some useful")
    assert orch.store.get("React Tutorial", KNOWLEDGE).summary == "React summary"
    assert "[Knowledge] React summary" in ctx
    assert "[Related Info] Some useful result" in ctx
    assert storage.saves == 1

    # same subject again: no repeat search
    orch.before_request("React Tutorial")
    assert len(search.queries) == 1


def test_search_gates(clock, storage):
    search = FakeSearch(config=SearchConfig(enabled=True, max_frequency_s=30, min_focus_s=10))
    orch = make_orch(clock, storage, search=search)
    orch.before_request("React Tutorial")  # focus too low
    tick(orch, "New Tab", 20)
    orch.before_request("New Tab")  # noise
    assert search.queries == []

    tick(orch, "React Tutorial", 20)
    orch.before_request("React Tutorial")
    tick(orch, "Rust Book", 20)
    orch.before_request("Rust Book")  # within min interval
    assert search.queries == ["React Tutorial"]
    clock.advance(31)
    orch.before_request("Rust Book")
    assert search.queries == ["React Tutorial", "Rust Book"]


def test_confident_knowledge_blocks_search(clock, storage):
    search = FakeSearch()
    orch = make_orch(clock, storage, search=search)
    orch.store.set("React Tutorial", KNOWLEDGE, KnowledgeLayer(summary="known"))
    orch.before_request("React Tutorial")
    assert search.queries == []


def test_subject_change_drops_title_and_unrelated_results(clock, storage):
    orch = make_orch(clock, storage)
    orch.before_request("React Tutorial")
    orch.session.set(ENRICHED_TITLE_KEY, "React Hooks Tutorial")
    orch.session.set(SEARCH_QUERY_KEY, "React Tutorial")
    orch.session.set(SEARCH_RESULTS_KEY, "react results")

    orch.before_request("React Tutorial part 2")
    assert orch.session.get(ENRICHED_TITLE_KEY) is None
    assert orch.session.get(SEARCH_RESULTS_KEY) == "react results"

    orch.before_request("Budget Spreadsheet")
    assert orch.session.get(SEARCH_RESULTS_KEY) is None
    assert orch.session.get(SEARCH_QUERY_KEY) is None


def test_related_subject_reuses_cached_results_for_knowledge(clock, storage):
    cfg = RuntimeConfig(knowledge=KnowledgeConfig(enabled=True))
    llm = FakeLLM("part two summary")
    orch = make_orch(clock, storage, llm=llm, config=cfg)
    orch.before_request("React Tutorial")
    orch.session.set(SEARCH_QUERY_KEY, "React Tutorial")
    orch.session.set(SEARCH_RESULTS_KEY, "react results")

    orch.before_request("React Tutorial part 2")
    assert "react results" in llm.calls[0][1]["content"]
    assert orch.store.get("React Tutorial part 2", KNOWLEDGE).summary == "part two summary"


def test_vision_runs_in_background_and_feeds_context(clock, storage):
    cfg = RuntimeConfig(vlm=VisionConfig(enabled=True, min_focus_s=0))
    orch = make_orch(clock, storage, llm=FakeLLM("react, hooks | React Hooks Tutorial"), config=cfg)
    ctx = orch.before_request("React Tutorial", IMAGE)
    orch.wait_background()
    assert orch.store.get("React Tutorial", VLM).enriched_title == "React Hooks Tutorial"
    assert "[Screen Content] React Hooks Tutorial" in ctx


def test_background_errors_are_logged_not_raised(clock, storage, caplog):
    cfg = RuntimeConfig(vlm=VisionConfig(enabled=True, min_focus_s=0))
    orch = make_orch(clock, storage, llm=FakeLLM(RuntimeError("model crashed")), config=cfg)
    orch.session.set(SEARCH_RESULTS_KEY, "still here")
    with caplog.at_level(logging.WARNING, logger="aw-context-worker"):
        ctx = orch.before_request("React Tutorial", IMAGE)
    assert "still here" in ctx
    assert "model crashed" in caplog.text
    assert not orch.vision.in_flight
    assert orch.vision.backoff.interval("React Tutorial") == 30
    orch.before_request("React Tutorial", IMAGE)
    assert len(orch.vision.client.calls) == 1


def test_knowledge_client_error_does_not_fail_request(clock, storage):
    cfg = RuntimeConfig(knowledge=KnowledgeConfig(enabled=True))
    llm = FakeLLM(AttributeError("'list' object has no attribute 'strip'"))
    orch = make_orch(clock, storage, llm=llm, search=FakeSearch(), config=cfg)
    ctx = orch.before_request("React Tutorial")
    assert "Some useful result text" in ctx
    assert len(llm.calls) == 1
    assert orch.knowledge.backoff.interval("React Tutorial") == 120


def test_acquisition_pipeline_from_vision_keywords(clock, storage):
    cfg = RuntimeConfig(
        vlm=VisionConfig(enabled=True, min_focus_s=0),
        knowledge_acq=AcquisitionConfig(enabled=True, min_focus_s=0),
    )
    search = FakeSearch(config=SearchConfig(enabled=True, min_focus_s=1000))
    llm = FakeLLM("rust, tokio | Rust Async Book", '["Rust async"]', '["tutorial"]')
    orch = make_orch(clock, storage, llm=llm, search=search, config=cfg)
    orch.before_request("Rust Book", IMAGE)
    orch.wait_background()
    assert search.queries == ["Rust async tutorial"]
    assert orch.acquisition.queue_status()["done"] == 1
    assert orch.store.get("Rust async tutorial", ACQUIRED).confidence == 0.8


def test_subject_change_supersedes_cycle(clock, storage):
    orch = make_orch(clock, storage)
    orch.before_request("React Tutorial")
    guard = orch._cycle_guard()
    assert guard()
    orch.before_request("React Tutorial")
    assert guard()
    orch.before_request("Budget Spreadsheet")
    assert not guard()


def test_empty_subject_returns_empty(clock, storage):
    orch = make_orch(clock, storage)
    assert orch.before_request("") == ""


def test_stop_flushes_tracker_and_store(clock, storage):
    orch = make_orch(clock, storage)
    tick(orch, "Editor", 3)
    orch.stop()
    assert orch.tracker.session_counts() == {}
    assert storage.data["Editor"]["memory"]["totalSec"] == 3


def test_from_config_wires_components(clock, storage):
    cfg = RuntimeConfig(max_subjects=10, session_max_entries=7)
    orch = Orchestrator.from_config(cfg, client=FakeLLM("x"), storage=storage, clock=clock, executor=InlineExecutor())
    assert orch.store.max_subjects == 10
    assert orch.session.max_entries == 7
    assert orch.acquisition.search is orch.search
    orch.init(start_tracker=False)
    assert orch.build_context("anything") == ""

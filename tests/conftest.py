"""Shared fixtures: controllable clock, scripted LLM and search, in-memory stores."""

from concurrent.futures import Future
from datetime import datetime, timezone

import pytest

from awctx.config import SearchConfig
from awctx.pools import PersistentStore, SessionStore
from awctx.search import SearchResult
from awctx.utils.state import MemoryStorage


class FakeClock:
    """Callable clock returning a settable unix time."""

    def __init__(self, start: float):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLLM:
    """Returns scripted replies in order; an Exception instance is raised instead."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def complete(self, messages):
        self.calls.append(messages)
        if not self.replies:
            return ""
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeSearch:
    """Stand-in for EnrichmentService with a fixed answer per query."""

    def __init__(self, results=None, default=None, enabled=True, config=None):
        self.results = results or {}
        self.default = default if default is not None else SearchResult(
            True, results="Some useful result text about the query"
        )
        self.config = config or SearchConfig(enabled=enabled, max_frequency_s=0, min_focus_s=0)
        self.queries = []

    @property
    def enabled(self):
        return self.config.enabled

    def search(self, query):
        self.queries.append(query)
        return self.results.get(query, self.default)


class InlineExecutor:
    """Runs submitted jobs immediately on the calling thread."""

    def submit(self, fn, *args, **kwargs):
        fut = Future()
        try:
            fut.set_result(fn(*args, **kwargs))
        except Exception as e:
            fut.set_exception(e)
        return fut

    def shutdown(self, wait=True):
        pass


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc).timestamp())


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def session(clock):
    return SessionStore(clock=clock)


@pytest.fixture
def store(storage):
    return PersistentStore(storage=storage)

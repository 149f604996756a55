"""Per-layer payload schemas of the persistent store.

Each subject record maps a layer name to one of the payload types below.
Payloads are frozen: an update builds a new instance and the store swaps
the whole layer, so a reader never sees a half-written record.
"""

import logging
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Type, Union

LOG = logging.getLogger("aw-context-worker")

MEMORY = "memory"
KNOWLEDGE = "knowledge"
VLM = "vlm"
SEARCH = "search"
ACQUIRED = "acquired"
TERMS = "terms"
QUEUE = "queue"

QUEUE_SUBJECT = "__kb_queue__"
RESERVED_PREFIX = "__"


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.title() for p in rest)


class _Layer:
    """Mixin: JSON mapping <-> dataclass, camelCase keys on disk."""

    def to_dict(self) -> Dict[str, Any]:
        return {_camel(f.name): getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]):
        kwargs = {}
        for f in fields(cls):
            for key in (_camel(f.name), f.name):
                if key in d:
                    kwargs[f.name] = d[key]
                    break
        return cls(**kwargs)

    def is_empty(self) -> bool:
        return False

    def evolve(self, **changes):
        return replace(self, **changes)


@dataclass(frozen=True)
class MemoryLayer(_Layer):
    total_sec: int = 0
    last_seen: str = ""
    day_count: int = 0
    recent_days: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class KnowledgeLayer(_Layer):
    summary: str = ""
    last_updated: float = 0.0
    update_count: int = 0
    current_interval: float = 0.0

    def is_empty(self) -> bool:
        return not self.summary


@dataclass(frozen=True)
class VlmLayer(_Layer):
    summary: str = ""
    enriched_title: str = ""
    last_updated: float = 0.0
    update_count: int = 0

    def is_empty(self) -> bool:
        return not self.summary and not self.enriched_title


@dataclass(frozen=True)
class SearchLayer(_Layer):
    results: str = ""
    cached_at: float = 0.0

    def is_empty(self) -> bool:
        return not self.results


@dataclass(frozen=True)
class AcquiredLayer(_Layer):
    summary: str = ""
    topic: str = ""
    term: str = ""
    confidence: float = 0.8
    original_confidence: Optional[float] = None
    searched_at: float = 0.0


@dataclass(frozen=True)
class TermsLayer(_Layer):
    terms: Tuple[str, ...] = ()
    generated_at: float = 0.0
    lang: str = "en"
    verified: bool = False
    verified_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["terms"] = list(self.terms)
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]):
        layer = super().from_dict(d)
        return replace(layer, terms=tuple(layer.terms or ()))


class TaskStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class AcquisitionTask(_Layer):
    topic: str
    term: str
    status: TaskStatus = TaskStatus.PENDING
    retries: int = 0
    added_at: float = 0.0

    @property
    def query(self) -> str:
        return f"{self.topic} {self.term}"

    def to_dict(self) -> Dict[str, Any]:
        d = super().to_dict()
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]):
        task = super().from_dict(d)
        return replace(task, status=TaskStatus(task.status))


@dataclass(frozen=True)
class QueueLayer(_Layer):
    tasks: Tuple[AcquisitionTask, ...] = ()
    last_updated: float = 0.0

    def is_empty(self) -> bool:
        return not self.tasks

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tasks": [t.to_dict() for t in self.tasks],
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]):
        tasks = tuple(AcquisitionTask.from_dict(t) for t in d.get("tasks") or [])
        return cls(tasks=tasks, last_updated=d.get("lastUpdated", 0.0))


LayerPayload = Union[
    MemoryLayer, KnowledgeLayer, VlmLayer, SearchLayer, AcquiredLayer, TermsLayer, QueueLayer
]

LAYER_TYPES: Dict[str, Type[_Layer]] = {
    MEMORY: MemoryLayer,
    KNOWLEDGE: KnowledgeLayer,
    VLM: VlmLayer,
    SEARCH: SearchLayer,
    ACQUIRED: AcquiredLayer,
    TERMS: TermsLayer,
    QUEUE: QueueLayer,
}


def check_layer(layer: str, payload: Any) -> None:
    """Raise TypeError when a payload does not match its layer's schema."""
    expected = LAYER_TYPES.get(layer)
    if expected is None:
        raise KeyError(f"Unknown layer: {layer}")
    if not isinstance(payload, expected):
        raise TypeError(
            f"Layer {layer!r} expects {expected.__name__}, got {type(payload).__name__}"
        )


def encode_record(record: Dict[str, LayerPayload]) -> Dict[str, Any]:
    return {layer: payload.to_dict() for layer, payload in record.items()}


def decode_record(subject: str, raw: Dict[str, Any]) -> Dict[str, LayerPayload]:
    """Decode one stored subject; bad or unknown layers are skipped."""
    record: Dict[str, LayerPayload] = {}
    if not isinstance(raw, dict):
        LOG.warning("Skipping malformed record for %r", subject)
        return record
    for layer, data in raw.items():
        cls = LAYER_TYPES.get(layer)
        if cls is None:
            LOG.debug("Ignoring unknown layer %r for %r", layer, subject)
            continue
        try:
            record[layer] = cls.from_dict(data)
        except (TypeError, ValueError, AttributeError) as e:
            LOG.warning("Skipping malformed %s layer for %r: %s", layer, subject, e)
    return record

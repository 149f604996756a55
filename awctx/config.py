"""Runtime configuration for the context engine.

One dataclass per component; a component takes its whole config in a
single ``configure`` call. Files are YAML or JSON, either flat or nested
under an ``enhance:`` key. Older files using camelCase millisecond keys
(``minIntervalMs``) are accepted too.
"""

import os
import logging
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Optional

from awctx.errors import ConfigError
from awctx.utils.helpers import load_yaml_or_json

LOG = logging.getLogger("aw-context-worker")


@dataclass(frozen=True)
class MemoryConfig:
    enabled: bool = True
    retention_days: int = 30
    flush_interval_s: float = 300.0


@dataclass(frozen=True)
class SearchConfig:
    enabled: bool = False
    provider: str = "custom"  # custom | searxng | brave
    custom_url: str = ""
    custom_api_key: str = ""
    custom_headers: Optional[Dict[str, str]] = None
    searxng_url: str = "http://localhost:8080"
    brave_api_key: str = ""
    max_results: int = 5
    timeout_s: float = 15.0
    # orchestrator gates
    max_frequency_s: float = 30.0
    min_focus_s: float = 10.0


@dataclass(frozen=True)
class KnowledgeConfig:
    enabled: bool = False
    min_interval_s: float = 60.0
    max_interval_s: float = 3600.0


@dataclass(frozen=True)
class VisionConfig:
    enabled: bool = False
    base_interval_s: float = 15.0
    max_interval_s: float = 60.0
    min_focus_s: float = 10.0


@dataclass(frozen=True)
class AcquisitionConfig:
    enabled: bool = False
    min_focus_s: float = 60.0
    term_cooldown_s: float = 3600.0
    max_terms_per_topic: int = 15
    max_searches_per_request: int = 2
    retention_days: int = 30
    verified_cooldown_multiplier: float = 24.0
    decay_per_week: float = 0.1
    max_known_topics: int = 200


@dataclass(frozen=True)
class LLMConfig:
    backend: str = "openai"  # openai | llama | llama-cli
    base_url: str = ""
    api_key: str = ""
    model: str = ""
    timeout_s: float = 30.0
    max_tokens: int = 512
    temperature: float = 0.8
    # local backends
    model_path: str = ""
    mmproj_path: str = ""
    cli_path: str = ""
    n_ctx: int = 4096
    n_gpu_layers: int = -1


@dataclass(frozen=True)
class RuntimeConfig:
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    knowledge: KnowledgeConfig = field(default_factory=KnowledgeConfig)
    vlm: VisionConfig = field(default_factory=VisionConfig)
    knowledge_acq: AcquisitionConfig = field(default_factory=AcquisitionConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    lang: str = "en"
    data_path: str = "~/.local/share/aw-context-worker/enhance-data.json"
    session_max_entries: int = 50
    max_subjects: int = 200
    context_budget: int = 2500


SECTIONS = {
    "memory": MemoryConfig,
    "search": SearchConfig,
    "knowledge": KnowledgeConfig,
    "vlm": VisionConfig,
    "knowledge_acq": AcquisitionConfig,
    "llm": LLMConfig,
}

# camelCase section names used by older config files
SECTION_ALIASES = {"knowledgeAcq": "knowledge_acq", "vision": "vlm"}


def _snake(name: str) -> str:
    out = []
    for ch in name:
        if ch.isupper():
            out.append("_" + ch.lower())
        else:
            out.append(ch)
    return "".join(out)


def _normalize_key(key: str, value: Any):
    """Map camelCase / *Ms keys to snake_case seconds."""
    key = _snake(key)
    if key.endswith("_ms"):
        key = key[:-3] + "_s"
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = value / 1000.0
    elif key.endswith("_seconds"):
        key = key[: -len("_seconds")] + "_s"
    return key, value


def _coerce(cls_name: str, f, value: Any) -> Any:
    default = f.default
    if default is None or isinstance(default, dict):
        return value
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("1", "true", "yes", "no", "0", "false"):
            return value.strip().lower() in ("1", "true", "yes")
        raise ConfigError(f"{cls_name}.{f.name} must be a boolean, got {value!r}")
    if isinstance(default, (int, float)):
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise ConfigError(f"{cls_name}.{f.name} must be a number, got {value!r}")
        try:
            return type(default)(value) if isinstance(default, float) else int(float(value))
        except ValueError:
            raise ConfigError(f"{cls_name}.{f.name} must be a number, got {value!r}")
    if isinstance(default, str):
        return str(value)
    return value


def build_section(cls, raw: Optional[Dict[str, Any]], base=None):
    """Overlay a raw mapping onto a config dataclass."""
    base = base if base is not None else cls()
    if not raw:
        return base
    if not isinstance(raw, dict):
        raise ConfigError(f"{cls.__name__} section must be a mapping")
    known = {f.name: f for f in fields(cls)}
    changes = {}
    for key, value in raw.items():
        name, value = _normalize_key(key, value)
        f = known.get(name)
        if f is None:
            LOG.warning("Ignoring unknown %s key: %s", cls.__name__, key)
            continue
        changes[name] = _coerce(cls.__name__, f, value)
    return replace(base, **changes)


def runtime_config_from_dict(data: Dict[str, Any]) -> RuntimeConfig:
    if not isinstance(data, dict):
        raise ConfigError("Config root must be a mapping")
    if isinstance(data.get("enhance"), dict):
        merged = {k: v for k, v in data.items() if k != "enhance"}
        merged.update(data["enhance"])
        data = merged
    cfg = RuntimeConfig()
    sections = {}
    top = {}
    for key, value in data.items():
        section = SECTION_ALIASES.get(key, key)
        if section in SECTIONS:
            sections[section] = build_section(SECTIONS[section], value)
        else:
            top[key] = value
    cfg = replace(cfg, **sections)

    # orchestrator-level keys
    scalars = {f.name: f for f in fields(RuntimeConfig) if f.name not in SECTIONS}
    changes = {}
    for key, value in top.items():
        name, value = _normalize_key(key, value)
        f = scalars.get(name)
        if f is None:
            LOG.warning("Ignoring unknown config key: %s", key)
            continue
        changes[name] = _coerce("RuntimeConfig", f, value)
    return replace(cfg, **changes)


def load_runtime_config(path: Optional[str]) -> RuntimeConfig:
    """Load config from YAML/JSON; no path means all defaults."""
    if path and not os.path.exists(path):
        raise ConfigError(f"Config file not found: {path}")
    return runtime_config_from_dict(load_yaml_or_json(path))

"""Utility modules for aw-context-worker."""

from .helpers import (
    day_key,
    to_data_url,
    file_to_b64,
    load_yaml_or_json,
    read_json,
    ensure_dir,
)
from .state import JsonFileStorage, MemoryStorage, write_json_atomic

__all__ = [
    "day_key",
    "to_data_url",
    "file_to_b64",
    "load_yaml_or_json",
    "read_json",
    "ensure_dir",
    "JsonFileStorage",
    "MemoryStorage",
    "write_json_atomic",
]

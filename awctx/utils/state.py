"""Durable storage for the persistent context store."""

import os
import uuid
import json
import logging
from typing import Any, Dict

from awctx.errors import StorageError
from .helpers import read_json, ensure_dir

LOG = logging.getLogger("aw-context-worker")


def write_json_atomic(path: str, obj: Any) -> None:
    """Write JSON atomically to avoid corruption."""
    tmp = f"{path}.tmp.{uuid.uuid4().hex}"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(obj, f, ensure_ascii=False, separators=(",", ":"))
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


class JsonFileStorage:
    """Loads and saves the whole subject mapping as one JSON document."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> Dict[str, Any]:
        """Return the stored mapping; a missing file is an empty store."""
        if not os.path.exists(self.path):
            return {}
        try:
            data = read_json(self.path)
        except (OSError, ValueError) as e:
            raise StorageError(f"Failed to read {self.path}: {e}")
        if not isinstance(data, dict):
            raise StorageError(f"Unexpected top-level type in {self.path}")
        return data

    def save(self, data: Dict[str, Any]) -> None:
        try:
            ensure_dir(os.path.dirname(os.path.abspath(self.path)))
            write_json_atomic(self.path, data)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to write {self.path}: {e}")
        LOG.debug("Saved %d subjects to %s", len(data), self.path)


class MemoryStorage:
    """In-process storage; keeps a deep copy of the last saved mapping."""

    def __init__(self, data: Dict[str, Any] = None):
        self.data = json.loads(json.dumps(data or {}))
        self.saves = 0

    def load(self) -> Dict[str, Any]:
        return json.loads(json.dumps(self.data))

    def save(self, data: Dict[str, Any]) -> None:
        self.data = json.loads(json.dumps(data))
        self.saves += 1

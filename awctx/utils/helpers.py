"""Utility functions for aw-context-worker."""

import os
import json
import yaml
import base64
from typing import Any, Dict, Optional
from datetime import datetime, timezone

from awctx.errors import ConfigError


def day_key(ts: float) -> str:
    """UTC calendar day (YYYY-MM-DD) for a unix timestamp."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")


def to_data_url(image_b64: str, mime: str = "image/jpeg") -> str:
    """Wrap a base64 image as an inline data URL."""
    return f"data:{mime};base64,{image_b64}"


def file_to_b64(path: str) -> str:
    """Read a file and return its base64 text."""
    with open(path, "rb") as f:
        return base64.b64encode(f.read()).decode("ascii")


def load_yaml_or_json(path: Optional[str]) -> Dict[str, Any]:
    """Load YAML or JSON file."""
    if not path:
        return {}
    with open(path, "r", encoding="utf-8") as f:
        txt = f.read()
    try:
        if path.endswith(".json"):
            return json.loads(txt)
        return yaml.safe_load(txt) or {}
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}")


def read_json(path: str) -> Dict[str, Any]:
    """Read JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def ensure_dir(d: str) -> str:
    """Ensure directory exists."""
    os.makedirs(d, exist_ok=True)
    return d

"""ActivityWatch input: focused window and screenshot spool."""

import os
import glob
import time
import logging
from typing import Dict, Optional

import requests

from awctx.text import clean_window_title
from awctx.utils.helpers import file_to_b64, read_json

LOG = logging.getLogger("aw-context-worker")


def window_bucket(hostname: str) -> str:
    return f"aw-watcher-window_{hostname}"


def detect_hostname(testing: bool = False) -> str:
    """Hostname as the ActivityWatch client reports it (used in bucket ids)."""
    from aw_client import ActivityWatchClient

    client = ActivityWatchClient("aw-context-worker", testing=testing)
    return client.client_hostname


def window_event_to_subject(ev: Dict) -> str:
    d = ev.get("data", {})
    if not d:
        return ""
    title = clean_window_title(d.get("title", ""))
    app = d.get("app", "")
    if title and app and app.lower() not in title.lower():
        return f"{title} - {app}"
    return title or app


def fetch_current_window(host: str, bucket_id: str) -> Optional[str]:
    """Return the subject of the most recent window event, or None."""
    url = f"{host}/api/0/buckets/{bucket_id}/events"
    try:
        r = requests.get(url, params={"limit": 1}, timeout=15)
        r.raise_for_status()
        events = r.json()
    except (requests.RequestException, ValueError) as e:
        LOG.warning(f"Error fetching current window from {bucket_id}: {e}")
        return None
    if not events:
        return None
    return window_event_to_subject(events[0]) or None


def latest_screenshot(spool_dir: Optional[str], max_age_s: float = 30.0) -> Optional[str]:
    """
    Base64 image of the newest spool record, if it is fresh enough.

    Spool records are the JSON files written by the screenshot watcher;
    each points at the captured image through its ``path`` field.
    """
    if not spool_dir or not os.path.isdir(spool_dir):
        return None
    files = sorted(glob.glob(os.path.join(spool_dir, "*.json")), key=os.path.getmtime)
    if not files:
        return None
    newest = files[-1]
    if time.time() - os.path.getmtime(newest) > max_age_s:
        return None
    try:
        rec = read_json(newest)
    except (OSError, ValueError) as e:
        LOG.debug("Skip unreadable %s: %r", newest, e)
        return None
    path = rec.get("path")
    if not path or not os.path.exists(path):
        return None
    try:
        return file_to_b64(path)
    except OSError as e:
        LOG.debug("Cannot read screenshot %s: %r", path, e)
        return None

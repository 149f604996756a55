"""Web search enrichment: a stateless wrapper over HTTP search providers."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from awctx.config import SearchConfig
from awctx.errors import ConfigError

LOG = logging.getLogger("aw-context-worker")


@dataclass(frozen=True)
class SearchResult:
    success: bool
    results: str = ""
    error: str = ""


def _results_at(data: Any, *keys: str) -> List[Any]:
    """Walk nested JSON objects to the result list; anything else is malformed."""
    for key in keys:
        if data is None:
            return []
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object around {key!r}")
        data = data.get(key)
    if data is None:
        return []
    if not isinstance(data, list):
        raise ValueError("results is not a list")
    return data


def _flatten(items: List[Any], limit: int) -> str:
    """Join result items into one ``title: snippet | ...`` string."""
    parts = []
    for item in items[:limit]:
        if isinstance(item, str):
            text = item.strip()
        elif isinstance(item, dict):
            title = str(item.get("title") or "").strip()
            snippet = str(
                item.get("snippet") or item.get("content") or item.get("description") or ""
            ).strip()
            text = f"{title}: {snippet}" if title and snippet else (title or snippet)
        else:
            continue
        if text:
            parts.append(text)
    return " | ".join(parts)


class EnrichmentService:
    """Search capability used by the orchestrator and knowledge acquisition.

    ``search`` never raises; every failure comes back as
    ``SearchResult(success=False, error=...)``.
    """

    def __init__(self, config: Optional[SearchConfig] = None, session: Optional[requests.Session] = None):
        self.config = config or SearchConfig()
        self.session = session or requests.Session()

    def configure(self, config: SearchConfig) -> None:
        self.config = config

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def search(self, query: str) -> SearchResult:
        cfg = self.config
        if not cfg.enabled or not query:
            return SearchResult(False, error="disabled")
        provider = cfg.provider.lower()
        try:
            if provider == "custom":
                text = self._search_custom(query)
            elif provider == "searxng":
                text = self._search_searxng(query)
            elif provider == "brave":
                text = self._search_brave(query)
            else:
                return SearchResult(False, error=f"unknown provider: {cfg.provider}")
        except ConfigError as e:
            LOG.debug("Search skipped: %s", e)
            return SearchResult(False, error=str(e))
        except requests.Timeout:
            LOG.warning("Search timeout for provider %s", provider)
            return SearchResult(False, error="timeout")
        except requests.RequestException as e:
            LOG.error("Search error: %s", e)
            return SearchResult(False, error=str(e))
        except ValueError as e:
            LOG.error("Search returned malformed payload: %s", e)
            return SearchResult(False, error=f"bad response: {e}")
        return SearchResult(True, results=text)

    def _get(self, url: str, params: Dict[str, Any], headers: Dict[str, str]) -> requests.Response:
        r = self.session.get(url, params=params, headers=headers, timeout=self.config.timeout_s)
        r.raise_for_status()
        return r

    def _search_custom(self, query: str) -> str:
        cfg = self.config
        if not cfg.custom_url:
            raise ConfigError("custom search URL not configured")
        headers = {"Accept": "application/json"}
        if cfg.custom_api_key:
            headers["Authorization"] = f"Bearer {cfg.custom_api_key}"
        if cfg.custom_headers:
            headers.update(cfg.custom_headers)
        r = self._get(cfg.custom_url, {"q": query, "count": cfg.max_results}, headers)
        ctype = r.headers.get("Content-Type", "")
        if "json" not in ctype:
            return r.text.strip()[:2000]
        data = r.json()
        if isinstance(data, dict):
            items = data.get("results") or data.get("items") or data.get("data") or []
            if isinstance(data.get("web"), dict):
                items = data["web"].get("results", [])
        else:
            items = data
        if not isinstance(items, list):
            raise ValueError("results is not a list")
        return _flatten(items, cfg.max_results)

    def _search_searxng(self, query: str) -> str:
        cfg = self.config
        params = {
            "q": query,
            "format": "json",
            "language": "all",
            "pageno": 1,
            "safesearch": 0,
        }
        r = self._get(f"{cfg.searxng_url.rstrip('/')}/search", params, {"Accept": "application/json"})
        return _flatten(_results_at(r.json(), "results"), cfg.max_results)

    def _search_brave(self, query: str) -> str:
        cfg = self.config
        if not cfg.brave_api_key:
            raise ConfigError("brave api key not configured")
        r = self._get(
            "https://api.search.brave.com/res/v1/web/search",
            {"q": query, "count": min(max(cfg.max_results, 1), 10)},
            {"Accept": "application/json", "X-Subscription-Token": cfg.brave_api_key},
        )
        return _flatten(_results_at(r.json(), "web", "results"), cfg.max_results)

"""LLM-organized knowledge per subject, refreshed with exponential backoff."""

import time
import logging
from typing import Callable, Optional

from awctx.backoff import SubjectBackoff
from awctx.config import KnowledgeConfig
from awctx.layers import KNOWLEDGE, KnowledgeLayer
from awctx.pools import PersistentStore
from awctx.prompt import build_knowledge_messages
from awctx.text import sanitize_secrets

LOG = logging.getLogger("aw-context-worker")

HIGH_CONFIDENCE = 0.7
RELATED_MIN_CONFIDENCE = 0.3
MAX_SUMMARY = 200


class SummaryStore:
    """Summarizes search results into the ``knowledge`` layer.

    Every attempt, successful or not, doubles the subject's backoff. A
    subject already covered by a confident knowledge hit is not
    regenerated; that counts as an attempt too.
    """

    def __init__(
        self,
        store: PersistentStore,
        client=None,
        config: Optional[KnowledgeConfig] = None,
        lang: str = "en",
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.client = client
        self.config = config or KnowledgeConfig()
        self.lang = lang
        self._clock = clock
        self.backoff = SubjectBackoff(
            self.config.min_interval_s, self.config.max_interval_s, clock=clock
        )

    def configure(self, config: KnowledgeConfig) -> None:
        self.config = config
        self.backoff.configure(config.min_interval_s, config.max_interval_s)

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def maybe_update(
        self,
        subject: str,
        search_text: Optional[str],
        is_current: Optional[Callable[[], bool]] = None,
    ) -> bool:
        """Refresh the subject's summary if its backoff allows it.

        Returns True when a new summary was stored.
        """
        if not self.enabled or not subject or self.client is None:
            return False
        if not self.backoff.ready(subject):
            return False

        existing = self.store.query(subject, layer=KNOWLEDGE, max_results=1)
        if existing and existing[0].confidence > HIGH_CONFIDENCE:
            self.backoff.escalate(subject)
            return False

        if not search_text:
            return False

        interval = self.backoff.interval(subject)
        related = [
            (h.subject, h.data.summary)
            for h in self.store.query(
                subject, layer=KNOWLEDGE, max_results=3, min_confidence=RELATED_MIN_CONFIDENCE
            )
        ]
        messages = build_knowledge_messages(subject, search_text, related, self.lang)
        try:
            summary = self.client.complete(messages)
        except Exception as e:
            self.backoff.escalate(subject)
            LOG.warning("Knowledge update failed for %s: %s", sanitize_secrets(subject), e)
            return False

        self.backoff.escalate(subject)
        if not summary:
            return False
        if is_current is not None and not is_current():
            LOG.debug("Discarding superseded knowledge for %s", sanitize_secrets(subject))
            return False

        previous = self.store.get(subject, KNOWLEDGE)
        self.store.set(
            subject,
            KNOWLEDGE,
            KnowledgeLayer(
                summary=summary[:MAX_SUMMARY],
                last_updated=self._clock(),
                update_count=(previous.update_count if previous else 0) + 1,
                current_interval=interval,
            ),
        )
        LOG.info("Knowledge updated for: %s", sanitize_secrets(subject))
        return True

    def reset_interval(self, subject: str) -> None:
        self.backoff.reset(subject)

"""Screenshot keyword/title extraction through a vision-capable LLM."""

import time
import logging
import threading
from typing import Callable, Optional

from awctx.backoff import SubjectBackoff
from awctx.config import VisionConfig
from awctx.layers import VLM, VlmLayer
from awctx.pools import PersistentStore, SessionStore
from awctx.prompt import build_vision_messages, parse_vision_result
from awctx.text import is_noise_subject, sanitize_secrets
from awctx.tracker import TODAY_KEY

LOG = logging.getLogger("aw-context-worker")

ENRICHED_TITLE_KEY = "vlm.enriched_title"
HIGH_CONFIDENCE = 0.8


class VisionExtractor:
    """Enriches the focused subject with screen keywords and a descriptive title."""

    def __init__(
        self,
        session: SessionStore,
        store: PersistentStore,
        client=None,
        config: Optional[VisionConfig] = None,
        lang: str = "en",
        clock: Callable[[], float] = time.time,
    ):
        self.session = session
        self.store = store
        self.client = client
        self.config = config or VisionConfig()
        self.lang = lang
        self._clock = clock
        self.backoff = SubjectBackoff(
            self.config.base_interval_s, self.config.max_interval_s, clock=clock
        )
        self._extracting = False
        self._guard = threading.Lock()

    def configure(self, config: VisionConfig) -> None:
        self.config = config
        self.backoff.configure(config.base_interval_s, config.max_interval_s)

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def in_flight(self) -> bool:
        return self._extracting

    def _eligible(self, subject: str, image_b64: Optional[str]) -> bool:
        if not self.enabled or not subject or not image_b64 or self.client is None:
            return False
        if is_noise_subject(subject):
            return False
        focus = (self.session.get(TODAY_KEY) or {}).get(subject, 0)
        if focus < self.config.min_focus_s:
            return False
        return self.backoff.ready(subject)

    def maybe_extract(
        self,
        subject: str,
        image_b64: Optional[str],
        is_current: Optional[Callable[[], bool]] = None,
    ) -> bool:
        """Run one extraction if the subject is due. Returns True on a stored result."""
        if not self._eligible(subject, image_b64):
            return False

        with self._guard:
            if self._extracting:
                return False
            self._extracting = True
        try:
            existing = self.store.query(subject, layer=VLM, max_results=1)
            if existing and existing[0].confidence > HIGH_CONFIDENCE:
                self.backoff.escalate(subject)
                return False
            return self._extract(subject, image_b64, is_current)
        finally:
            self._extracting = False

    def _extract(self, subject: str, image_b64: str, is_current) -> bool:
        safe = sanitize_secrets(subject)
        try:
            result = self.client.complete(build_vision_messages(subject, image_b64, self.lang))
        except Exception as e:
            self.backoff.escalate(subject)
            LOG.warning('Vision extraction failed for "%s": %s', safe, e)
            return False

        self.backoff.escalate(subject)
        if not result:
            return False
        if is_current is not None and not is_current():
            LOG.debug('Discarding superseded vision result for "%s"', safe)
            return False

        keywords, title = parse_vision_result(result)
        previous = self.store.get(subject, VLM)
        self.store.set(
            subject,
            VLM,
            VlmLayer(
                summary=keywords[:200],
                enriched_title=(title or subject)[:80],
                last_updated=self._clock(),
                update_count=(previous.update_count if previous else 0) + 1,
            ),
        )
        self.session.set(ENRICHED_TITLE_KEY, (title or subject)[:80])
        LOG.info('Vision extracted for "%s": %s', safe, sanitize_secrets(result[:80]))
        return True

    def reset_interval(self, subject: str) -> None:
        self.backoff.reset(subject)

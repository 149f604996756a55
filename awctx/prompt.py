"""Prompt templates and response parsers for the enrichment pipelines."""

import re
import json
from typing import Any, Dict, List, Tuple

from awctx.errors import ParseError
from awctx.utils.helpers import to_data_url

LANG_NAMES = {"en": "English", "zh": "中文", "ja": "日本語"}

SECTION_LABELS = {
    "en": {
        "screen": "Screen Content",
        "today": "Today's Activity",
        "history": "Usage History",
        "knowledge": "Knowledge",
        "related": "Related Info",
    },
    "zh": {
        "screen": "屏幕内容",
        "today": "今日活动",
        "history": "使用历史",
        "knowledge": "知识",
        "related": "相关信息",
    },
    "ja": {
        "screen": "画面の内容",
        "today": "今日のアクティビティ",
        "history": "利用履歴",
        "knowledge": "知識",
        "related": "関連情報",
    },
}

KNOWLEDGE_PROMPT = """
You organize background knowledge about what the user is looking at.
Given a window title and web search snippets, write one factual summary
of what this window is about (max 150 characters). No preamble.
Output in {lang}.
""".strip()

VISION_PROMPT = """
You look at a screenshot of the user's focused window.
Reply on one line in the form:
keywords: <5-10 comma separated keywords> | title: <short descriptive title, max 60 chars>
Output in {lang}. No other text.
""".strip()

TOPIC_PROMPT = """
From these screen keywords, extract at most 3 broad topics worth
learning background knowledge about: {keywords}
Respond with a JSON array of short strings only, e.g. ["Rust async", "Tokio"].
""".strip()

TERMS_PROMPT = """
Generate web search terms to learn current knowledge about "{topic}".
Current time: {timestamp}. Each term is a short phrase that will be
appended to the topic name. Output in {lang}.
Respond with a JSON array of strings only.
""".strip()


def lang_name(lang: str) -> str:
    return LANG_NAMES.get(lang, "English")


def section_label(key: str, lang: str = "en") -> str:
    return SECTION_LABELS.get(lang, SECTION_LABELS["en"]).get(key, key)


def build_knowledge_messages(
    subject: str, search_text: str, related: List[Tuple[str, str]], lang: str = "en"
) -> List[Dict[str, Any]]:
    """Messages asking for a short summary of the subject from search snippets.

    Args:
        subject: Current window subject
        search_text: Raw search result text
        related: (subject, summary) pairs already in the store
        lang: Output language code

    Returns:
        OpenAI-style message list
    """
    user = f"Window: {subject}\nSearch: {search_text}"
    rag = "\n".join(f"{s}: {summary}" for s, summary in related)
    if rag:
        user += f"\nRelated knowledge: {rag}"
    return [
        {"role": "system", "content": KNOWLEDGE_PROMPT.format(lang=lang_name(lang))},
        {"role": "user", "content": user},
    ]


def build_topic_messages(keywords: str) -> List[Dict[str, Any]]:
    return [
        {"role": "system", "content": TOPIC_PROMPT.format(keywords=keywords)},
        {"role": "user", "content": "Extract."},
    ]


def build_terms_messages(topic: str, timestamp: str, lang: str = "en") -> List[Dict[str, Any]]:
    prompt = TERMS_PROMPT.format(topic=topic, timestamp=timestamp, lang=lang_name(lang))
    return [
        {"role": "system", "content": prompt},
        {"role": "user", "content": "Generate."},
    ]


def clean_response(content: str) -> str:
    """Strip reasoning blocks some models emit before the answer."""
    if not content:
        return content
    content = re.sub(r"<think>.*?</think>", "", content, flags=re.DOTALL | re.IGNORECASE)
    content = re.sub(r"<thinking>.*?</thinking>", "", content, flags=re.DOTALL | re.IGNORECASE)
    content = re.sub(r"<think>.*$", "", content, flags=re.DOTALL | re.IGNORECASE)
    content = re.sub(r"\n\s*\n\s*\n", "\n\n", content)
    return content.strip()


def extract_json_array(txt: str) -> List[Any]:
    """Extract the first JSON array from LLM output."""
    if not txt:
        raise ParseError("Empty LLM output")
    try:
        parsed = json.loads(txt)
        if isinstance(parsed, list):
            return parsed
    except ValueError:
        pass
    m = re.search(r"\[.*?\]", txt, flags=re.DOTALL)
    if not m:
        raise ParseError("No JSON array found in LLM output")
    try:
        parsed = json.loads(m.group(0))
    except ValueError as e:
        raise ParseError(f"Malformed JSON array in LLM output: {e}")
    if not isinstance(parsed, list):
        raise ParseError("JSON value is not an array")
    return parsed


def parse_vision_result(txt: str) -> Tuple[str, str]:
    """Split a ``keywords | title`` reply. Either side may be missing."""
    keywords, title = txt.strip(), ""
    if "|" in txt:
        left, right = txt.split("|", 1)
        keywords = re.sub(r"^keywords:\s*", "", left.strip(), flags=re.IGNORECASE).strip()
        title = re.sub(r"^title:\s*", "", right.strip(), flags=re.IGNORECASE).strip()
    else:
        keywords = re.sub(r"^keywords:\s*", "", keywords, flags=re.IGNORECASE).strip()
    return keywords[:150], title[:80]


def build_vision_messages(subject: str, image_b64: str, lang: str = "en") -> List[Dict[str, Any]]:
    """Compose OpenAI-style content array with image + text."""
    return [
        {"role": "system", "content": VISION_PROMPT.format(lang=lang_name(lang))},
        {
            "role": "user",
            "content": [
                {"type": "text", "text": f"Window: {subject}"},
                {"type": "image_url", "image_url": {"url": to_data_url(image_b64)}},
            ],
        },
    ]

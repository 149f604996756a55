"""Subject text handling: cleaning, tokenizing and similarity of window titles."""

import re
from typing import Iterable, List

STOP_WORDS = frozenset(
    [
        "the", "a", "an", "is", "in", "on", "at", "to", "for", "of", "and", "or",
        "new", "tab", "page", "untitled", "this", "that", "it",
        "microsoft", "edge", "chrome", "firefox", "personal",
        "的", "了", "在", "是", "我", "你", "他", "个人", "页面", "另外", "和",
        "個人用", "件", "ページ", "その他", "タブ",
    ]
)

NOISE_MARKERS = (
    "new tab",
    "desktop",
    "untitled",
    "start",
    "system tray overflow",
    "新标签页",
    "系统托盘溢出",
    "新しいタブ",
    "システムトレイ",
)

SECRET_RE = re.compile(r"[A-Za-z0-9_-]{20,}")
SECRET_MASK = "[***]"

_PROFILE_SUFFIX = re.compile(
    r"\s*[-–—]\s*(个人|personal|個人用)\s*[-–—]\s*microsoft\s*edge\s*", re.IGNORECASE
)
_MORE_PAGES = (
    re.compile(r"\s*和另外\s*\d+\s*个页面\s*"),
    re.compile(r"\s*and\s+\d+\s+more\s+pages?\s*", re.IGNORECASE),
    re.compile(r"\s*他\s*\d+\s*件のページ\s*"),
)
_SEPARATORS = re.compile(r"[-–—|·:：]")


def tokenize_subject(subject: str) -> List[str]:
    """Split a subject into lowercase content tokens, order preserved."""
    if not subject:
        return []
    text = subject.lower()
    text = _PROFILE_SUFFIX.sub("", text)
    for pat in _MORE_PAGES:
        text = pat.sub("", text)
    text = _SEPARATORS.sub(" ", text)
    return [w for w in text.split() if len(w) > 1 and w not in STOP_WORDS]


def keyword_tokens(text: str) -> List[str]:
    """Tokens of a comma/pipe separated keyword list."""
    if not text:
        return []
    parts = re.split(r"[,|;，；\s]+", text.lower())
    return [w.strip() for w in parts if len(w.strip()) > 1 and w.strip() not in STOP_WORDS]


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    """|A ∩ B| / |A ∪ B| over token sets."""
    set_a, set_b = set(a), set(b)
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def subjects_related(a: str, b: str, threshold: float = 0.3) -> bool:
    """True when two subjects share enough tokens to reuse enrichment."""
    if not a or not b:
        return False
    tokens_a, tokens_b = tokenize_subject(a), tokenize_subject(b)
    if not tokens_a or not tokens_b:
        return False
    return jaccard(tokens_a, tokens_b) >= threshold


def is_noise_subject(subject: str) -> bool:
    if not subject or len(subject) < 3:
        return True
    low = subject.lower()
    return any(n in low for n in NOISE_MARKERS)


def sanitize_secrets(text: str) -> str:
    """Mask long alphanumeric runs that look like keys or tokens."""
    if not text:
        return text
    return SECRET_RE.sub(SECRET_MASK, text)


def compact_subject(subject: str, max_len: int = 25) -> str:
    """Short display form of a subject without platform and browser suffixes.

    e.g. "Lecture 3 - SomeChannel - YouTube - Google Chrome" -> "Lecture 3 - SomeChannel"
    """
    if not subject:
        return ""
    t = re.sub(
        r"\s*[-–—]\s*(哔哩哔哩|bilibili|YouTube|Twitch|ニコニコ)[^-–—]*",
        "",
        subject,
        flags=re.IGNORECASE,
    )
    t = _PROFILE_SUFFIX.sub("", t)
    t = re.sub(
        r"\s*[-–—]\s*(Google\s*Chrome|Microsoft\s*Edge|Firefox|Safari|Opera)\s*",
        "",
        t,
        flags=re.IGNORECASE,
    )
    t = re.sub(r"\s*和另外\s*\d+\s*个.*$", "", t)
    t = re.sub(r"\s*and\s+\d+\s+more.*$", "", t, flags=re.IGNORECASE)
    t = re.sub(r"\s*他\s*\d+\s*件.*$", "", t)
    t = t.strip()
    return t[:max_len]


def clean_window_title(text: str) -> str:
    """
    Normalize a raw window title into a subject.

    Args:
        text: Raw title (optionally prefixed with the app name)

    Returns:
        Title with noise tags removed and whitespace collapsed
    """
    if not text:
        return ""

    # Remove noise tags
    text = re.sub(r"\s*\(Incognito\)\s*", " ", text)
    text = re.sub(r"\s*[–-]\s*Audio playing\s*", " ", text)
    text = re.sub(r"\s*\(\d+\s+new\s+items?\)\s*", " ", text)
    # Unread counters like "(3) Inbox"
    text = re.sub(r"^\(\d+\)\s*", "", text)

    # Collapse repeated separators
    text = re.sub(r"\s*—+\s*", " — ", text)
    text = re.sub(r"\s+-\s+", " - ", text)

    text = re.sub(r"\s+", " ", text)
    return text.strip()

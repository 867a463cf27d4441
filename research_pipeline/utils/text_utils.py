from __future__ import annotations

import os
import re
from typing import List, Set

import nltk

CJK_RE = re.compile(r"[一-鿿぀-ヿ가-힯]")
_KANA_RE = re.compile(r"[぀-ヿ]")
_HANGUL_RE = re.compile(r"[가-힯]")
_SENTENCE_RE = re.compile(r"(?<=[.!?。！？])\s+|(?<=[。！？])")


def _ensure_nltk_ready() -> bool:
    """Return True if the stopwords corpus is available (download if env allows)."""
    try:
        nltk.data.find("corpora/stopwords")
        return True
    except LookupError:
        if os.getenv("ALLOW_NLTK_DOWNLOADS") == "1":
            return bool(nltk.download("stopwords", quiet=True))
        return False


_BASE_STOP_WORDS: Set[str] = {
    "the", "a", "an", "and", "or", "but", "of", "in", "on", "for", "to", "with", "by",
    "is", "are", "was", "were", "be", "as", "at", "it", "this", "that", "from",
    "has", "have", "had", "its", "their", "about", "into", "than", "then", "can",
    "will", "would", "could", "should", "not", "also", "more", "most", "very",
}

# Function words of the CJK questions the pipeline also handles
CJK_STOP_WORDS: Set[str] = {
    "的", "是", "在", "有", "和", "與", "或", "但", "而", "了", "也", "都", "很", "更", "最",
}

if _ensure_nltk_ready():
    STOP_WORDS: Set[str] = set(nltk.corpus.stopwords.words("english")) | _BASE_STOP_WORDS
else:
    STOP_WORDS = set(_BASE_STOP_WORDS)
STOP_WORDS |= CJK_STOP_WORDS


def tokenize(text: str, *, lower: bool = True, min_len: int = 1) -> List[str]:
    text = text.lower() if lower else text
    tokens = re.findall(r"\w+", text)
    return [t for t in tokens if t not in STOP_WORDS and len(t) >= min_len]


def has_cjk(text: str) -> bool:
    return bool(CJK_RE.search(text or ""))


def is_english_like(text: str) -> bool:
    """A text counts as foreign/English-like when it carries no CJK codepoint."""
    return not has_cjk(text)


def detect_language(text: str) -> str:
    """Map text to one of the supported output language codes."""
    if _KANA_RE.search(text or ""):
        return "ja"
    if _HANGUL_RE.search(text or ""):
        return "ko"
    if has_cjk(text):
        return "zh-TW"
    return "en"


_LANG_DIRECTIVES = {
    "en": "Write the answer in English.",
    "zh-TW": "Write the answer in Traditional Chinese (繁體中文), keeping technical terms in English where customary.",
    "ja": "Write the answer in Japanese (日本語).",
    "ko": "Write the answer in Korean (한국어).",
}


def resolve_language(lang: str, question: str) -> str:
    return detect_language(question) if lang == "auto" else lang


def lang_directive(lang: str, question: str = "") -> str:
    return _LANG_DIRECTIVES.get(resolve_language(lang, question), _LANG_DIRECTIVES["en"])


def smart_truncate(text: str, max_chars: int) -> str:
    """Cut at a word boundary when one falls in the last fifth of the limit."""
    if not text or len(text) <= max_chars:
        return text or ""
    cut = text[:max_chars]
    last_space = cut.rfind(" ")
    if last_space > max_chars * 0.8:
        cut = cut[:last_space]
    return cut.rstrip() + "…"


def chunk_text(text: str, size: int = 50) -> List[str]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [text[i:i + size] for i in range(0, len(text), size)]


def split_sentences(text: str) -> List[str]:
    parts = _SENTENCE_RE.split((text or "").strip())
    return [p.strip() for p in parts if p and p.strip()]


def first_sentences(text: str, n: int, min_chars: int = 20) -> List[str]:
    """Return up to ``n`` sentences long enough to stand on their own."""
    out: List[str] = []
    for sentence in split_sentences(text):
        cleaned = sentence.strip(" -*#>\t")
        if len(cleaned) >= min_chars:
            out.append(cleaned)
        if len(out) >= n:
            break
    return out

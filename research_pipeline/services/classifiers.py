"""
Swappable text classification used by credibility cross-validation.

The evaluator only depends on the :class:`TextClassifier` protocol; the
default :class:`KeywordTextClassifier` maps text to coarse topic buckets and a
polarity using small fixed word lists.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, Optional, Protocol, Sequence, Tuple, runtime_checkable

from ..models.credibility import Sentiment

GENERAL_TOPIC = "general"

# Bucket order matters: the first bucket with a hit wins
TOPIC_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("technology", (
        "ai", "artificial intelligence", "machine learning", "deep learning", "algorithm",
        "software", "computer", "chip", "chips", "semiconductor", "gpu", "hardware",
        "robot", "robotics", "automation", "digital", "internet", "cloud",
        "人工智慧", "人工智能", "科技", "技術", "技术", "軟體", "软件", "晶片", "芯片", "演算法", "算法",
    )),
    ("health", (
        "health", "healthcare", "medical", "medicine", "hospital", "disease", "patient",
        "patients", "clinical", "treatment", "vaccine", "drug", "therapy",
        "健康", "醫療", "医疗", "疾病", "藥物", "药物", "治療", "治疗", "醫院", "医院",
    )),
    ("education", (
        "education", "school", "schools", "student", "students", "classroom", "classrooms",
        "university", "learning outcomes", "curriculum",
        "教育", "學校", "学校", "學生", "学生", "教學", "教学", "大學", "大学",
    )),
    ("business", (
        "business", "market", "markets", "economy", "economic", "company", "companies",
        "revenue", "profit", "investment", "finance", "financial", "trade",
        "經濟", "经济", "商業", "商业", "市場", "市场", "投資", "投资", "企業", "企业",
    )),
    ("science", (
        "science", "scientific", "research", "physics", "chemistry", "biology",
        "experiment", "laboratory", "climate",
        "科學", "科学", "研究", "實驗", "实验", "物理", "化學", "化学", "生物",
    )),
    ("manufacturing", (
        "manufacturing", "factory", "factories", "production", "industrial", "supply chain",
        "製造", "制造", "工廠", "工厂", "生產", "生产", "工業", "工业",
    )),
)

POSITIVE_WORDS: Tuple[str, ...] = (
    "good", "great", "excellent", "positive", "benefit", "benefits", "improve", "improves",
    "improved", "improvement", "success", "successful", "effective", "gain", "gains", "better",
    "好", "優秀", "优秀", "正面", "積極", "积极", "有益", "改善", "提升", "成功",
)

NEGATIVE_WORDS: Tuple[str, ...] = (
    "bad", "poor", "negative", "harm", "harms", "harmful", "damage", "failure", "fail",
    "fails", "problem", "problems", "worse", "decline", "risk", "risks",
    "壞", "坏", "差", "負面", "负面", "消極", "消极", "有害", "損害", "损害", "失敗", "失败", "問題", "问题",
)

FACTUAL_TOKENS: Tuple[str, ...] = (
    "data", "research", "study", "studies", "survey", "report", "analysis", "statistics",
    "數據", "数据", "研究", "調查", "调查", "報告", "报告", "分析", "統計", "统计",
)


@runtime_checkable
class TextClassifier(Protocol):
    def classify_topic(self, text: str) -> str: ...

    def classify_sentiment(self, text: str) -> Sentiment: ...


def _compile_terms(terms: Iterable[str]) -> Tuple[Optional[re.Pattern], Tuple[str, ...]]:
    """Split terms into a word-boundary regex (ASCII) and substring terms (CJK)."""
    ascii_terms = sorted((t for t in terms if t.isascii()), key=len, reverse=True)
    cjk_terms = tuple(t for t in terms if not t.isascii())
    pattern = None
    if ascii_terms:
        pattern = re.compile(r"\b(?:" + "|".join(re.escape(t) for t in ascii_terms) + r")\b", re.IGNORECASE)
    return pattern, cjk_terms


class _TermMatcher:
    def __init__(self, terms: Iterable[str]):
        self._pattern, self._cjk = _compile_terms(list(terms))

    def count(self, text: str) -> int:
        hits = len(self._pattern.findall(text)) if self._pattern else 0
        return hits + sum(text.count(t) for t in self._cjk)

    def matches(self, text: str) -> bool:
        if self._pattern and self._pattern.search(text):
            return True
        return any(t in text for t in self._cjk)


class KeywordTextClassifier:
    """Fixed word-list classifier: first topic bucket hit, polarity by counts."""

    def __init__(
        self,
        topics: Sequence[Tuple[str, Sequence[str]]] = TOPIC_KEYWORDS,
        positive: Sequence[str] = POSITIVE_WORDS,
        negative: Sequence[str] = NEGATIVE_WORDS,
    ):
        self._topics: Dict[str, _TermMatcher] = {name: _TermMatcher(words) for name, words in topics}
        self._positive = _TermMatcher(positive)
        self._negative = _TermMatcher(negative)

    def classify_topic(self, text: str) -> str:
        for name, matcher in self._topics.items():
            if matcher.matches(text or ""):
                return name
        return GENERAL_TOPIC

    def classify_sentiment(self, text: str) -> Sentiment:
        pos = self._positive.count(text or "")
        neg = self._negative.count(text or "")
        if pos > neg:
            return Sentiment.POSITIVE
        if neg > pos:
            return Sentiment.NEGATIVE
        return Sentiment.NEUTRAL


_FACTUAL = _TermMatcher(FACTUAL_TOKENS)


def has_factual_marker(text: str) -> bool:
    """True when the text carries an evidentiary token ("study", "data", ...)."""
    return _FACTUAL.matches(text or "")

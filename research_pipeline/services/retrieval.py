"""
Retrieval post-processing: deduplication, trust/recency scoring, per-domain
diversification with an English-source backfill, and rule-based query
expansion.
"""

from __future__ import annotations

import re
from collections import Counter
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

import structlog

from ..models.research import Source
from ..utils.date_utils import age_in_days
from ..utils.text_utils import has_cjk, is_english_like
from ..utils.url_utils import extract_domain, normalize_url, registrable_domain, top_level_domain

logger = structlog.get_logger(__name__)

BASE_SCORE = 0.55

TRUST_BONUS: Dict[str, float] = {
    "reuters.com": 0.20,
    "apnews.com": 0.20,
    "bbc.com": 0.17,
    "nytimes.com": 0.15,
    "nature.com": 0.20,
    "science.org": 0.20,
    "arxiv.org": 0.15,
    "gov": 0.12,
    "edu": 0.12,
}

RECENCY_STEPS = ((3, 0.12), (7, 0.08), (30, 0.05))

# Backfill may exceed k by this many sources
BACKFILL_SLACK = 3

_INTERROGATIVE_RE = re.compile(r"\b(what|why|how|news|latest)\b", re.IGNORECASE)


def domain_trust_bonus(host: str) -> float:
    """Exact host, then registrable domain, then TLD; first match wins."""
    host = (host or "").lower()
    if not host:
        return 0.0
    for candidate in (host, registrable_domain(host), top_level_domain(host)):
        if candidate and candidate in TRUST_BONUS:
            return TRUST_BONUS[candidate]
    return 0.0


def recency_bonus(published: Optional[str], now: Optional[datetime] = None) -> float:
    age = age_in_days(published, now)
    if age is None:
        return 0.0
    for max_days, bonus in RECENCY_STEPS:
        if age <= max_days:
            return bonus
    return 0.0


def _is_foreign(source: Source) -> bool:
    return is_english_like(" ".join(p for p in (source.title, source.snippet, source.url) if p))


class RetrievalDiversifier:
    """Ranks raw search results and picks a domain- and language-balanced subset."""

    def __init__(self, now_fn: Optional[Callable[[], datetime]] = None):
        self._now_fn = now_fn

    def score(self, source: Source) -> float:
        host = extract_domain(source.url)
        now = self._now_fn() if self._now_fn else None
        raw = BASE_SCORE + domain_trust_bonus(host) + recency_bonus(source.published_date, now)
        return max(0.0, min(1.0, raw))

    def dedupe_and_score(self, raw_results: Iterable[Source]) -> List[Source]:
        """Collapse results sharing (title, registrable domain) and sort by score."""
        seen_keys: set = set()
        seen_urls: set = set()
        scored: List[Source] = []
        for source in raw_results:
            url_key = normalize_url(source.url)
            if not url_key or url_key in seen_urls:
                continue
            key = ((source.title or "").strip().lower(), registrable_domain(source.url))
            if key in seen_keys:
                continue
            seen_keys.add(key)
            seen_urls.add(url_key)
            scored.append(source.model_copy(update={"score": self.score(source)}))
        # sorted() is stable: equal scores keep provider order
        return sorted(scored, key=lambda s: s.score, reverse=True)

    def diversify(
        self,
        scored: List[Source],
        k: int,
        max_per_domain: int = 2,
        min_foreign_count: int = 0,
    ) -> List[Source]:
        per_domain: Counter = Counter()
        picked: List[Source] = []
        picked_urls: set = set()
        foreign = 0

        for source in scored:
            if len(picked) >= k:
                break
            domain = registrable_domain(source.url)
            if per_domain[domain] >= max_per_domain:
                continue
            per_domain[domain] += 1
            picked.append(source)
            picked_urls.add(source.url)
            if _is_foreign(source):
                foreign += 1

        if foreign < min_foreign_count:
            limit = k + BACKFILL_SLACK
            for source in scored:
                if foreign >= min_foreign_count or len(picked) >= limit:
                    break
                if source.url in picked_urls or not _is_foreign(source):
                    continue
                domain = registrable_domain(source.url)
                if per_domain[domain] >= max_per_domain:
                    continue
                per_domain[domain] += 1
                picked.append(source)
                picked_urls.add(source.url)
                foreign += 1

        logger.debug(
            "Diversified sources",
            pool=len(scored),
            picked=len(picked),
            foreign=foreign,
            domains=len(per_domain),
        )
        return picked


def expand_queries(question: str, max_queries: int = 3) -> List[str]:
    """Rule-based query variants: the question itself, a recency variant and,
    for CJK questions, an official-sources variant."""
    q = (question or "").strip()
    if not q:
        return []
    variants = [q]
    if has_cjk(q):
        variants.append(f"{q} site:gov 最新 資訊")
    if not _INTERROGATIVE_RE.search(q):
        variants.append(f"{q} latest")
    return list(dict.fromkeys(variants))[:max_queries]

"""
Evidence credibility scoring for research runs.

Implements per-source quality (domain authority + time decay), keyword/topic/
sentiment cross-validation of claims against sources, uncertainty assessment,
and the weighted overall credibility score. Scores are integers on a 0-100
scale; the uncertainty confidence is a 0-1 fraction.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Sequence

import structlog

from ..core import config
from ..models.credibility import (
    Consensus,
    CredibilityBreakdown,
    CredibilityReport,
    CredibilityScore,
    CrossValidationResult,
    EvidenceStrength,
    Recommendation,
    RiskLevel,
    UncertaintyAssessment,
)
from ..models.research import Source
from ..utils.date_utils import age_in_days
from ..utils.text_utils import tokenize
from ..utils.url_utils import extract_domain
from .cache import ResultCache
from .classifiers import KeywordTextClassifier, TextClassifier, has_factual_marker
from .concurrency import BoundedConcurrencyExecutor

logger = structlog.get_logger(__name__)


# ────────────────────────────────────────────────────────────
#  Static tables
# ────────────────────────────────────────────────────────────

AUTHORITY_DOMAINS: Dict[str, float] = {
    "scholar.google.com": 0.95,
    "nature.com": 0.92,
    "science.org": 0.92,
    "arxiv.org": 0.90,
    "cell.com": 0.90,
    "who.int": 0.88,
    "ieee.org": 0.88,
    "acm.org": 0.87,
    "cdc.gov": 0.87,
    "researchgate.net": 0.85,
    "worldbank.org": 0.85,
    "gov": 0.85,
    "un.org": 0.83,
    "ap.org": 0.78,
    "reuters.com": 0.75,
    "bbc.com": 0.73,
}

DEFAULT_AUTHORITY = 0.5
UNPARSEABLE_SOURCE_SCORE = 0.3
UNDATED_TIME_SCORE = 1.0
UNPARSEABLE_TIME_SCORE = 0.6

# (max age in days, score); older than the last step scores UNPARSEABLE_TIME_SCORE
TIME_DECAY_STEPS = ((7, 1.0), (30, 0.9), (90, 0.8), (365, 0.7))

SUPPORT_THRESHOLD = 0.45
CONTRADICT_THRESHOLD = 0.25

CONSENSUS_POINTS = {Consensus.STRONG: 30, Consensus.WEAK: 15, Consensus.CONFLICTING: 5}
STRENGTH_POINTS = {EvidenceStrength.HIGH: 20, EvidenceStrength.MEDIUM: 12, EvidenceStrength.LOW: 5}

SUB_SCORE_ADVICE = {
    "source_quality": (
        "Add sources from recognised authorities such as journals, agencies or wire services.",
        "Source quality is below the recommended level.",
    ),
    "fact_checking": (
        "Collect more independently sourced facts before relying on the answer.",
        "Few verifiable facts back the answer.",
    ),
    "cross_validation": (
        "Cross-check the key claims against additional independent sources.",
        "Key claims lack consistent support across sources.",
    ),
    "temporal_validity": (
        "Prefer more recently published material.",
        "Some sources may be outdated.",
    ),
    "authority_weight": (
        "Include sources from higher-authority institutions.",
        "Authoritative sources are under-represented.",
    ),
}


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def _clamp100(value: float) -> int:
    return int(max(0, min(100, round(value))))


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def authority_score(host: str, default: float = DEFAULT_AUTHORITY) -> float:
    """Authority of a host; the most specific matching suffix wins (``cdc.gov`` before ``gov``)."""
    labels = [label for label in (host or "").lower().split(".") if label]
    for i in range(len(labels)):
        candidate = ".".join(labels[i:])
        if candidate in AUTHORITY_DOMAINS:
            return AUTHORITY_DOMAINS[candidate]
    return default


def time_score(published: Optional[str], now: Optional[datetime] = None) -> float:
    if not published:
        return UNDATED_TIME_SCORE
    age = age_in_days(published, now)
    if age is None:
        return UNPARSEABLE_TIME_SCORE
    for max_days, score in TIME_DECAY_STEPS:
        if age <= max_days:
            return score
    return UNPARSEABLE_TIME_SCORE


def _source_quality_fraction(source: Source, now: Optional[datetime] = None) -> float:
    host = extract_domain(source.url)
    if not host:
        return UNPARSEABLE_SOURCE_SCORE
    return 0.7 * authority_score(host) + 0.3 * time_score(source.published_date, now)


class CredibilityEvaluator:
    """Scores sources and claims; cross-validation goes through the shared cache and executor."""

    def __init__(
        self,
        cache: Optional[ResultCache] = None,
        executor: Optional[BoundedConcurrencyExecutor] = None,
        classifier: Optional[TextClassifier] = None,
        *,
        batch_size: int = config.VALIDATION_BATCH_SIZE,
        now_fn=None,
    ):
        self.cache = cache or ResultCache(
            maxsize=config.VALIDATION_CACHE_MAX_SIZE,
            ttl=config.VALIDATION_CACHE_TTL_SEC,
            name="validation",
        )
        self.executor = executor or BoundedConcurrencyExecutor(config.EXECUTOR_MAX_CONCURRENT, name="validation")
        self.classifier: TextClassifier = classifier or KeywordTextClassifier()
        self.batch_size = batch_size
        self._now_fn = now_fn

    def _now(self) -> Optional[datetime]:
        return self._now_fn() if self._now_fn else None

    # ────────────────────────────────────────────────────────────
    #  Source-level scores
    # ────────────────────────────────────────────────────────────

    def source_quality(self, sources: Sequence[Source]) -> int:
        if not sources:
            return 0
        now = self._now()
        return _clamp100(_mean([_source_quality_fraction(s, now) for s in sources]) * 100)

    def fact_checking_score(self, facts: Sequence[str], sources: Sequence[Source]) -> int:
        if not facts:
            return 0
        coverage = min(len(facts) / 5, 1.0)
        return _clamp100(0.6 * self.source_quality(sources) + 40 * coverage)

    def temporal_validity(self, sources: Sequence[Source]) -> int:
        if not sources:
            return 0
        now = self._now()
        return _clamp100(_mean([time_score(s.published_date, now) for s in sources]) * 100)

    def authority_weight(self, sources: Sequence[Source]) -> int:
        if not sources:
            return 0
        weights = []
        for source in sources:
            host = extract_domain(source.url)
            weights.append(authority_score(host) if host else UNPARSEABLE_SOURCE_SCORE)
        return _clamp100(_mean(weights) * 100)

    # ────────────────────────────────────────────────────────────
    #  Cross-validation
    # ────────────────────────────────────────────────────────────

    def support_score(self, claim: str, source: Source) -> float:
        """Weighted keyword/topic/sentiment/lexicon agreement of a source with a claim."""
        source_text = " ".join(p for p in (source.title, source.snippet, source.content) if p)
        lowered = source_text.lower()

        keywords = list(dict.fromkeys(tokenize(claim, min_len=3)))
        overlap = (sum(1 for k in keywords if k in lowered) / len(keywords)) if keywords else 0.0

        topic_match = 1.0 if self.classifier.classify_topic(claim) == self.classifier.classify_topic(source_text) else 0.3
        sentiment_match = (
            1.0
            if self.classifier.classify_sentiment(claim) == self.classifier.classify_sentiment(source_text)
            else 0.5
        )
        lexicon = 1.0 if has_factual_marker(source_text) else 0.5

        return 0.4 * overlap + 0.3 * topic_match + 0.2 * sentiment_match + 0.1 * lexicon

    def validate_claim(self, claim: str, sources: Sequence[Source]) -> CrossValidationResult:
        supporting: List[Source] = []
        contradicting: List[Source] = []
        for source in sources:
            support = self.support_score(claim, source)
            if support > SUPPORT_THRESHOLD:
                supporting.append(source)
            elif support < CONTRADICT_THRESHOLD:
                contradicting.append(source)

        n_sup, n_con = len(supporting), len(contradicting)
        if n_sup > 2 * n_con:
            consensus = Consensus.STRONG
        elif n_con == 0:
            consensus = Consensus.WEAK
        else:
            consensus = Consensus.CONFLICTING

        if n_sup >= 3:
            strength = EvidenceStrength.HIGH
        elif n_sup >= 1:
            strength = EvidenceStrength.MEDIUM
        else:
            strength = EvidenceStrength.LOW

        confidence = 0
        if n_sup + n_con:
            now = self._now()
            support_ratio = n_sup / (n_sup + n_con)
            sup_quality = _mean([_source_quality_fraction(s, now) for s in supporting])
            con_quality = _mean([_source_quality_fraction(s, now) for s in contradicting])
            confidence = _clamp100(100 * _clamp01(0.6 * support_ratio + 0.4 * sup_quality - 0.3 * con_quality))

        return CrossValidationResult(
            claim=claim,
            supporting_sources=supporting,
            contradicting_sources=contradicting,
            confidence=confidence,
            consensus=consensus,
            evidence_strength=strength,
        )

    async def cross_validate(self, claims: Sequence[str], sources: Sequence[Source]) -> List[CrossValidationResult]:
        """Validate every claim against the same evidence set, reusing cached verdicts."""
        urls = [s.url for s in sources]

        def _factory(claim: str):
            async def _run() -> CrossValidationResult:
                cached = self.cache.get_for(claim, urls)
                if cached is not None:
                    return cached
                result = self.validate_claim(claim, sources)
                self.cache.set_for(claim, urls, result)
                return result
            return _run

        claims = [c for c in claims if c and c.strip()]
        results = await self.executor.process_batch([_factory(c) for c in claims], self.batch_size)
        logger.debug(
            "Cross-validation complete",
            claims=len(claims),
            sources=len(sources),
            cache=self.cache.stats()["hit_rate"],
        )
        return results

    # ────────────────────────────────────────────────────────────
    #  Aggregates
    # ────────────────────────────────────────────────────────────

    def assess_uncertainty(self, claims: Sequence[str], sources: Sequence[Source]) -> UncertaintyAssessment:
        factors: List[str] = []
        if len(sources) < 3:
            factors.append("fewer than 3 sources")
        if self.source_quality(sources) < 60:
            factors.append("source quality below 60")

        alternatives: List[str] = []
        if claims:
            alternatives = [
                "other explanations may account for the same evidence",
                "available data may be incomplete",
            ]

        confidence = round(max(0.1, 1 - 0.2 * len(factors)), 2)
        if confidence > 0.7:
            risk = RiskLevel.LOW
        elif confidence > 0.4:
            risk = RiskLevel.MEDIUM
        else:
            risk = RiskLevel.HIGH

        if confidence > 0.6:
            recommendation = Recommendation.PROCEED
        elif confidence > 0.3:
            recommendation = Recommendation.CAUTION
        else:
            recommendation = Recommendation.REJECT

        return UncertaintyAssessment(
            confidence=confidence,
            factors=factors,
            alternatives=alternatives,
            recommendation=recommendation,
            risk_level=risk,
        )

    @staticmethod
    def cross_validation_score(results: Sequence[CrossValidationResult]) -> int:
        if not results:
            return 0
        totals = [
            CONSENSUS_POINTS[r.consensus] + STRENGTH_POINTS[r.evidence_strength] + 0.5 * r.confidence
            for r in results
        ]
        return _clamp100(_mean(totals))

    def overall_score(
        self,
        sources: Sequence[Source],
        facts: Sequence[str],
        results: Sequence[CrossValidationResult],
    ) -> CredibilityScore:
        breakdown = CredibilityBreakdown(
            source_quality=self.source_quality(sources),
            fact_checking=self.fact_checking_score(facts, sources),
            cross_validation=self.cross_validation_score(results),
            temporal_validity=self.temporal_validity(sources),
            authority_weight=self.authority_weight(sources),
        )
        overall = _clamp100(
            0.25 * breakdown.source_quality
            + 0.25 * breakdown.fact_checking
            + 0.25 * breakdown.cross_validation
            + 0.15 * breakdown.temporal_validity
            + 0.10 * breakdown.authority_weight
        )

        recommendations: List[str] = []
        warnings: List[str] = []
        for name, value in breakdown.model_dump().items():
            if value < 70:
                recommendation, warning = SUB_SCORE_ADVICE[name]
                recommendations.append(recommendation)
                warnings.append(warning)

        return CredibilityScore(
            overall=overall,
            breakdown=breakdown,
            recommendations=recommendations,
            warnings=warnings,
        )

    async def evaluate(
        self,
        claims: Sequence[str],
        sources: Sequence[Source],
        facts: Sequence[str],
    ) -> CredibilityReport:
        results = await self.cross_validate(claims, sources)
        return CredibilityReport(
            score=self.overall_score(sources, facts, results),
            cross_validation=results,
            uncertainty=self.assess_uncertainty(claims, sources),
        )

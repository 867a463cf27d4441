"""
Tests for source quality, cross-validation and the overall credibility score.
"""

from datetime import datetime, timedelta, timezone

import pytest

from research_pipeline.models.credibility import (
    Consensus,
    EvidenceStrength,
    Recommendation,
    RiskLevel,
    Sentiment,
)
from research_pipeline.models.research import Source
from research_pipeline.services.cache import ResultCache
from research_pipeline.services.classifiers import KeywordTextClassifier, TextClassifier
from research_pipeline.services.concurrency import BoundedConcurrencyExecutor
from research_pipeline.services.credibility import (
    CredibilityEvaluator,
    authority_score,
    time_score,
)

NOW = datetime(2025, 3, 1, tzinfo=timezone.utc)
CLAIM = "AI improves healthcare outcomes"


def _days_ago(days: int) -> str:
    return (NOW - timedelta(days=days)).isoformat()


@pytest.fixture
def evaluator() -> CredibilityEvaluator:
    return CredibilityEvaluator(
        cache=ResultCache(maxsize=100, ttl=60, name="test-validation"),
        executor=BoundedConcurrencyExecutor(2, name="test"),
        now_fn=lambda: NOW,
    )


@pytest.fixture
def supporting_sources():
    return [
        Source(
            url="https://www.nature.com/articles/ai-health",
            title="Study finds AI improves healthcare outcomes",
            snippet="Clinical data show AI improves patient healthcare outcomes.",
        ),
        Source(url="https://www.who.int/news/ai", title="AI improves healthcare outcomes, report says"),
        Source(url="https://www.reuters.com/health/ai", title="Research: AI improves healthcare outcomes in hospitals"),
    ]


@pytest.fixture
def unrelated_source():
    return Source(url="https://example.com/markets", title="Stock market closes lower")


class TestLookupTables:
    @pytest.mark.parametrize(
        "host, expected",
        [
            ("cdc.gov", 0.87),
            ("data.cdc.gov", 0.87),
            ("whitehouse.gov", 0.85),
            ("nature.com", 0.92),
            ("example.com", 0.5),
            ("", 0.5),
        ],
    )
    def test_authority_most_specific_suffix_wins(self, host, expected):
        assert authority_score(host) == pytest.approx(expected)

    @pytest.mark.parametrize(
        "published, expected",
        [(None, 1.0), ("garbage", 0.6), (3, 1.0), (10, 0.9), (60, 0.8), (200, 0.7), (400, 0.6)],
    )
    def test_time_decay(self, published, expected):
        raw = _days_ago(published) if isinstance(published, int) else published
        assert time_score(raw, NOW) == pytest.approx(expected)


class TestSourceScores:
    def test_empty_sources_score_zero(self, evaluator):
        assert evaluator.source_quality([]) == 0
        assert evaluator.temporal_validity([]) == 0
        assert evaluator.authority_weight([]) == 0

    def test_source_quality_in_range(self, evaluator, supporting_sources, unrelated_source):
        score = evaluator.source_quality(supporting_sources + [unrelated_source])
        assert 0 <= score <= 100

    def test_source_quality_weights_authority_and_time(self, evaluator):
        source = Source(url="https://www.nature.com/a", published_date=_days_ago(10))
        # 0.7 * 0.92 + 0.3 * 0.9
        assert evaluator.source_quality([source]) == 91

    def test_url_without_host_scores_floor(self, evaluator):
        assert evaluator.source_quality([Source(url="not a url")]) == 30

    def test_fact_checking_score(self, evaluator, supporting_sources):
        assert evaluator.fact_checking_score([], supporting_sources) == 0
        facts = ["f1", "f2", "f3", "f4", "f5", "f6"]
        expected = round(0.6 * evaluator.source_quality(supporting_sources) + 40)
        assert evaluator.fact_checking_score(facts, supporting_sources) == expected

    def test_temporal_validity_is_mean_time_score(self, evaluator):
        sources = [
            Source(url="https://a.com/1", published_date=_days_ago(10)),
            Source(url="https://b.com/2"),
        ]
        assert evaluator.temporal_validity(sources) == 95


class TestCrossValidation:
    def test_consistent_sources_give_strong_high(self, evaluator, supporting_sources):
        result = evaluator.validate_claim(CLAIM, supporting_sources)
        assert result.consensus == Consensus.STRONG
        assert result.evidence_strength == EvidenceStrength.HIGH
        assert len(result.supporting_sources) == 3
        assert result.contradicting_sources == []
        assert result.confidence >= 90

    def test_unrelated_source_counts_against_claim(self, evaluator, supporting_sources, unrelated_source):
        result = evaluator.validate_claim(CLAIM, supporting_sources[:1] + [unrelated_source])
        assert len(result.contradicting_sources) == 1
        assert result.consensus == Consensus.CONFLICTING
        assert result.evidence_strength == EvidenceStrength.MEDIUM

    def test_no_classified_sources_gives_zero_confidence(self, evaluator):
        result = evaluator.validate_claim(CLAIM, [])
        assert result.confidence == 0
        assert result.consensus == Consensus.WEAK
        assert result.evidence_strength == EvidenceStrength.LOW

    @pytest.mark.asyncio
    async def test_cross_validate_uses_cache(self, evaluator, supporting_sources):
        first = await evaluator.cross_validate([CLAIM, "  "], supporting_sources)
        second = await evaluator.cross_validate([CLAIM], supporting_sources)
        assert len(first) == 1
        assert first[0] == second[0]
        assert evaluator.cache.stats()["hits"] == 1

    def test_classifier_is_swappable(self, supporting_sources):
        class AlwaysSame:
            def classify_topic(self, text):
                return "general"

            def classify_sentiment(self, text):
                return Sentiment.NEUTRAL

        assert isinstance(AlwaysSame(), TextClassifier)
        evaluator = CredibilityEvaluator(classifier=AlwaysSame(), now_fn=lambda: NOW)
        unrelated = Source(url="https://example.com/x", title="Weather is mild")
        # Topic and sentiment always agree: 0.3 + 0.2 + 0.05 clears the support threshold
        result = evaluator.validate_claim(CLAIM, [unrelated])
        assert result.supporting_sources == [unrelated]
        assert result.contradicting_sources == []


class TestAggregates:
    def test_uncertainty_with_thin_evidence(self, evaluator):
        sources = [Source(url="https://example.com/a", published_date=_days_ago(400))]
        assessment = evaluator.assess_uncertainty([CLAIM], sources)
        assert len(assessment.factors) == 2
        assert assessment.confidence == pytest.approx(0.6)
        assert assessment.risk_level == RiskLevel.MEDIUM
        assert assessment.recommendation == Recommendation.CAUTION
        assert assessment.alternatives

    def test_uncertainty_with_good_evidence(self, evaluator, supporting_sources):
        assessment = evaluator.assess_uncertainty([], supporting_sources)
        assert assessment.confidence == pytest.approx(1.0)
        assert assessment.risk_level == RiskLevel.LOW
        assert assessment.recommendation == Recommendation.PROCEED
        assert assessment.alternatives == []

    def test_cross_validation_score(self, evaluator, supporting_sources):
        result = evaluator.validate_claim(CLAIM, supporting_sources)
        expected = round(30 + 20 + 0.5 * result.confidence)
        assert evaluator.cross_validation_score([result]) == min(100, expected)
        assert evaluator.cross_validation_score([]) == 0

    def test_overall_score_flags_weak_sub_scores(self, evaluator):
        sources = [Source(url="https://example.com/a", published_date=_days_ago(400))]
        score = evaluator.overall_score(sources, [], [])
        assert 0 <= score.overall <= 100
        assert score.breakdown.fact_checking == 0
        assert len(score.recommendations) == len(score.warnings)
        assert len(score.warnings) >= 3

    @pytest.mark.asyncio
    async def test_evaluate_bundles_everything(self, evaluator, supporting_sources):
        report = await evaluator.evaluate([CLAIM], supporting_sources, [CLAIM])
        assert report.cross_validation[0].consensus == Consensus.STRONG
        assert report.score.breakdown.cross_validation > 70
        assert report.uncertainty.risk_level == RiskLevel.LOW


class TestKeywordClassifier:
    def test_topic_and_sentiment(self):
        classifier = KeywordTextClassifier()
        assert classifier.classify_topic("New vaccine trial in hospital") == "health"
        assert classifier.classify_topic("人工智慧晶片") == "technology"
        assert classifier.classify_topic("a quiet afternoon") == "general"
        assert classifier.classify_sentiment("great gains and success") == Sentiment.POSITIVE
        assert classifier.classify_sentiment("a harmful decline") == Sentiment.NEGATIVE
        assert classifier.classify_sentiment("the sky") == Sentiment.NEUTRAL

    def test_word_boundaries(self):
        # "said" must not match "ai"
        assert KeywordTextClassifier().classify_topic("she said hello") == "general"

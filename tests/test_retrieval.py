"""
Tests for retrieval scoring, deduplication, diversification and query expansion.
"""

from datetime import datetime, timedelta, timezone

import pytest

from research_pipeline.models.research import Source
from research_pipeline.services.retrieval import (
    BACKFILL_SLACK,
    RetrievalDiversifier,
    domain_trust_bonus,
    expand_queries,
    recency_bonus,
)

NOW = datetime(2025, 3, 1, tzinfo=timezone.utc)


def _days_ago(days: int) -> str:
    return (NOW - timedelta(days=days)).isoformat()


@pytest.fixture
def diversifier() -> RetrievalDiversifier:
    return RetrievalDiversifier(now_fn=lambda: NOW)


class TestScoring:
    @pytest.mark.parametrize(
        "host, bonus",
        [
            ("reuters.com", 0.20),
            ("www.bbc.com", 0.17),
            ("cdc.gov", 0.12),
            ("cs.stanford.edu", 0.12),
            ("example.com", 0.0),
            ("", 0.0),
        ],
    )
    def test_domain_trust_bonus(self, host, bonus):
        assert domain_trust_bonus(host) == pytest.approx(bonus)

    def test_trust_lookup_uses_registrable_domain(self):
        assert domain_trust_bonus("uk.reuters.com") == pytest.approx(0.20)

    @pytest.mark.parametrize("days, bonus", [(1, 0.12), (5, 0.08), (20, 0.05), (90, 0.0)])
    def test_recency_steps(self, days, bonus):
        assert recency_bonus(_days_ago(days), NOW) == pytest.approx(bonus)

    def test_unparseable_date_gets_no_bonus(self):
        assert recency_bonus("not a date", NOW) == 0.0
        assert recency_bonus(None, NOW) == 0.0

    def test_score_is_clamped(self, diversifier):
        source = Source(url="https://www.reuters.com/a", title="t", published_date=_days_ago(1))
        assert diversifier.score(source) == pytest.approx(0.87)
        assert 0.0 <= diversifier.score(Source(url="https://x.org/a")) <= 1.0


class TestDedupeAndScore:
    def test_same_title_and_registrable_domain_collapse(self, diversifier):
        raw = [
            Source(url="https://www.reuters.com/a", title="Chip Report"),
            Source(url="https://uk.reuters.com/b", title="chip report "),
            Source(url="https://apnews.com/c", title="Chip Report"),
        ]
        ranked = diversifier.dedupe_and_score(raw)
        assert [s.url for s in ranked] == ["https://www.reuters.com/a", "https://apnews.com/c"]

    def test_duplicate_urls_dropped(self, diversifier):
        raw = [Source(url="https://x.com/a", title="one"), Source(url="https://x.com/a", title="two")]
        assert len(diversifier.dedupe_and_score(raw)) == 1

    def test_url_variants_count_as_duplicates(self, diversifier):
        raw = [Source(url="https://X.com/a/", title="one"), Source(url="https://x.com/a#top", title="two")]
        assert len(diversifier.dedupe_and_score(raw)) == 1

    def test_sorted_descending_and_stable(self, diversifier):
        raw = [
            Source(url="https://blog-a.com/1", title="a"),
            Source(url="https://www.nature.com/2", title="b"),
            Source(url="https://blog-b.com/3", title="c"),
        ]
        ranked = diversifier.dedupe_and_score(raw)
        assert ranked[0].url == "https://www.nature.com/2"
        # Equal scores keep provider order
        assert [s.url for s in ranked[1:]] == ["https://blog-a.com/1", "https://blog-b.com/3"]
        assert ranked[0].score == pytest.approx(0.75)


class TestDiversify:
    def test_per_domain_cap(self, diversifier):
        scored = [Source(url=f"https://news.example.com/{i}", title=f"t{i}") for i in range(5)]
        scored.append(Source(url="https://other.org/x", title="other"))
        picked = diversifier.diversify(scored, k=10, max_per_domain=2)
        assert [s.url for s in picked] == [
            "https://news.example.com/0",
            "https://news.example.com/1",
            "https://other.org/x",
        ]

    def test_stops_at_k_without_backfill_need(self, diversifier):
        scored = [Source(url=f"https://site{i}.com/", title=f"t{i}") for i in range(10)]
        assert len(diversifier.diversify(scored, k=4)) == 4

    def test_backfill_adds_english_sources_until_minimum(self, diversifier):
        cjk = [Source(url=f"https://site{i}.com.tw/", title=f"台灣新聞 {i}") for i in range(5)]
        english = [Source(url=f"https://en{i}.com/", title=f"English story {i}") for i in range(3)]
        picked = diversifier.diversify(cjk + english, k=3, min_foreign_count=2)
        assert [s.url for s in picked[:3]] == [s.url for s in cjk[:3]]
        assert [s.url for s in picked[3:]] == ["https://en0.com/", "https://en1.com/"]

    def test_backfill_never_exceeds_k_plus_slack(self, diversifier):
        cjk = [Source(url=f"https://site{i}.com.tw/", title=f"日本語の記事 {i}") for i in range(5)]
        english = [Source(url=f"https://en{i}.com/", title=f"English story {i}") for i in range(6)]
        picked = diversifier.diversify(cjk + english, k=3, min_foreign_count=10)
        assert len(picked) == 3 + BACKFILL_SLACK

    def test_backfill_respects_domain_cap(self, diversifier):
        cjk = [Source(url=f"https://site{i}.com.tw/", title=f"新聞 {i}") for i in range(3)]
        english = [Source(url=f"https://en.example.com/{i}", title=f"Story {i}") for i in range(4)]
        picked = diversifier.diversify(cjk + english, k=3, max_per_domain=2, min_foreign_count=4)
        assert sum(1 for s in picked if "example.com" in s.url) == 2


class TestExpandQueries:
    def test_adds_latest_variant(self):
        assert expand_queries("heat pump efficiency") == ["heat pump efficiency", "heat pump efficiency latest"]

    def test_interrogative_question_kept_alone(self):
        assert expand_queries("What is a heat pump?") == ["What is a heat pump?"]

    def test_cjk_question_gets_official_variant(self):
        queries = expand_queries("熱泵效率")
        assert queries[0] == "熱泵效率"
        assert any("site:gov" in q for q in queries)

    def test_empty_question(self):
        assert expand_queries("   ") == []

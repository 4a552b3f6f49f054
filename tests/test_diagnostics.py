"""Tests for search diagnostics."""

from knowledge_retrieval.models.search import SearchResult
from knowledge_retrieval.services.diagnostics import (
    SearchDataCollector,
    analyze_effectiveness,
    analyze_query,
)


def _result(score):
    return SearchResult(chunk_id=f"c{score}", content="text", score=score)


class TestSearchDataCollector:
    """Tests for SearchDataCollector."""

    def test_stage_timings(self):
        ticks = iter([0.0, 1.0, 1.5, 2.0, 2.25, 3.0])
        collector = SearchDataCollector(clock=lambda: next(ticks))

        with collector.measure("embedding"):
            pass
        with collector.measure("vector_search"):
            pass
        metrics = collector.finalize()

        assert metrics.embedding_generation_time == 500.0
        assert metrics.vector_search_time == 250.0
        assert metrics.total_response_time == 3000.0
        assert metrics.rerank_time is None

    def test_repeated_stage_accumulates(self):
        collector = SearchDataCollector()
        collector.record("keyword_search", 4.0)
        collector.record("keyword_search", 6.0)

        assert collector.finalize().keyword_search_time == 10.0

    def test_fallback_is_sticky(self):
        collector = SearchDataCollector()
        collector.record_search_mode("memory", True)
        collector.record_search_mode("hybrid", False)

        metrics = collector.finalize()

        assert metrics.search_mode == "hybrid"
        assert metrics.fallback_used is True

    def test_token_usage(self):
        collector = SearchDataCollector()
        assert collector.finalize().token_count == 0

        collector.record_token_usage(7)
        collector.record_token_usage(3)

        assert collector.finalize().token_count == 10


class TestAnalyzeEffectiveness:
    """Tests for analyze_effectiveness."""

    def test_empty(self):
        metrics = analyze_effectiveness([])

        assert metrics.empty_results is True
        assert metrics.result_count == 0

    def test_distribution(self):
        metrics = analyze_effectiveness([_result(s) for s in (0.9, 0.85, 0.7, 0.6, 0.5, 0.1)])

        assert metrics.result_count == 6
        assert metrics.score_distribution.high == 2
        assert metrics.score_distribution.medium == 2
        assert metrics.score_distribution.low == 2
        assert metrics.below_threshold_count == 3
        assert metrics.top_scores == [0.9, 0.85, 0.7, 0.6, 0.5]


class TestAnalyzeQuery:
    """Tests for analyze_query."""

    def test_simple_english(self):
        analysis = analyze_query("vector search")

        assert analysis.query_complexity == "simple"
        assert analysis.language == "en"
        assert analysis.has_keywords is False

    def test_boolean_keywords_and_chinese(self):
        analysis = analyze_query("知识库 AND 检索")

        assert analysis.has_keywords is True
        assert analysis.language == "zh"

    def test_complex_query(self):
        analysis = analyze_query(" ".join(f"term{i}" for i in range(60)))

        assert analysis.query_complexity == "complex"

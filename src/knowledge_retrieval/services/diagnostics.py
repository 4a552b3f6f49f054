"""Search performance and effectiveness diagnostics."""

import re
import time
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Literal, Sequence

from knowledge_retrieval.models.diagnostics import (
    QueryAnalysis,
    ScoreDistribution,
    SearchEffectivenessMetrics,
    SearchPerformanceMetrics,
)
from knowledge_retrieval.models.search import SearchResult
from knowledge_retrieval.services.chunking_service import get_chunking_service

HIGH_SCORE = 0.8
MEDIUM_SCORE = 0.6
BELOW_THRESHOLD_SCORE = 0.7
TOP_SCORES = 5
COMPLEX_QUERY_TOKENS = 50
MODERATE_QUERY_TOKENS = 20

_BOOLEAN_KEYWORDS = re.compile(r"\b(AND|OR|NOT|NEAR)\b", re.IGNORECASE)
_CJK = re.compile(r"[一-龥]")


class SearchDataCollector:
    """Collects stage timings (milliseconds) for one search request."""

    def __init__(self, clock: Callable[[], float] = time.perf_counter):
        self._clock = clock
        self._started = clock()
        self._timings: Dict[str, float] = {}
        self._token_count = 0
        self._search_mode: Literal["vector", "memory", "hybrid"] = "hybrid"
        self._fallback_used = False

    @contextmanager
    def measure(self, stage: str) -> Iterator[None]:
        """Time a block and add it to `stage` (repeat blocks accumulate)."""
        start = self._clock()
        try:
            yield
        finally:
            elapsed = (self._clock() - start) * 1000
            self._timings[stage] = self._timings.get(stage, 0.0) + elapsed

    def record(self, stage: str, duration_ms: float) -> None:
        self._timings[stage] = self._timings.get(stage, 0.0) + duration_ms

    def record_search_mode(self, mode: Literal["vector", "memory", "hybrid"], fallback_used: bool) -> None:
        self._search_mode = mode
        self._fallback_used = self._fallback_used or fallback_used

    def record_token_usage(self, count: int) -> None:
        self._token_count += count

    def finalize(self) -> SearchPerformanceMetrics:
        return SearchPerformanceMetrics(
            total_response_time=(self._clock() - self._started) * 1000,
            embedding_generation_time=self._timings.get("embedding", 0.0),
            vector_search_time=self._timings.get("vector_search", 0.0),
            keyword_search_time=self._timings.get("keyword_search", 0.0),
            rerank_time=self._timings.get("rerank"),
            database_query_time=self._timings.get("database", 0.0),
            token_count=self._token_count,
            search_mode=self._search_mode,
            fallback_used=self._fallback_used,
        )


def analyze_effectiveness(results: Sequence[SearchResult]) -> SearchEffectivenessMetrics:
    if not results:
        return SearchEffectivenessMetrics()

    scores = [r.score for r in results]
    distribution = ScoreDistribution()
    for score in scores:
        if score > HIGH_SCORE:
            distribution.high += 1
        elif score >= MEDIUM_SCORE:
            distribution.medium += 1
        else:
            distribution.low += 1

    return SearchEffectivenessMetrics(
        avg_score=sum(scores) / len(scores),
        top_scores=scores[:TOP_SCORES],
        score_distribution=distribution,
        result_count=len(results),
        empty_results=False,
        below_threshold_count=sum(1 for s in scores if s < BELOW_THRESHOLD_SCORE),
    )


def analyze_query(query: str) -> QueryAnalysis:
    token_count = get_chunking_service().count_tokens(query)
    if token_count > COMPLEX_QUERY_TOKENS:
        complexity = "complex"
    elif token_count > MODERATE_QUERY_TOKENS:
        complexity = "moderate"
    else:
        complexity = "simple"

    return QueryAnalysis(
        query=query,
        query_length=len(query),
        query_token_count=token_count,
        query_complexity=complexity,
        has_keywords=bool(_BOOLEAN_KEYWORDS.search(query)),
        language="zh" if _CJK.search(query) else "en",
    )

"""Search diagnostics models."""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class SearchPerformanceMetrics(BaseModel):
    """Timings in milliseconds for one search."""

    total_response_time: float = 0.0
    embedding_generation_time: float = 0.0
    vector_search_time: float = 0.0
    keyword_search_time: float = 0.0
    rerank_time: Optional[float] = None
    database_query_time: float = 0.0
    token_count: int = 0
    search_mode: Literal["vector", "memory", "hybrid"] = "hybrid"
    fallback_used: bool = False


class ScoreDistribution(BaseModel):
    high: int = 0
    medium: int = 0
    low: int = 0


class SearchEffectivenessMetrics(BaseModel):
    """Score statistics for a result set."""

    avg_score: float = 0.0
    top_scores: List[float] = Field(default_factory=list)
    score_distribution: ScoreDistribution = Field(default_factory=ScoreDistribution)
    result_count: int = 0
    empty_results: bool = True
    below_threshold_count: int = 0


class QueryAnalysis(BaseModel):
    """Static analysis of a query string."""

    query: str
    query_length: int
    query_token_count: int
    query_complexity: Literal["simple", "moderate", "complex"]
    has_keywords: bool
    language: Literal["zh", "en"]

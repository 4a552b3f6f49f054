"""Hybrid (vector + keyword) search orchestration."""

import asyncio
from typing import Dict, List, Optional, Sequence, Tuple

from knowledge_retrieval.config import get_settings
from knowledge_retrieval.models.search import (
    EnhancedQuery,
    HybridSearchOptions,
    HybridSearchResponse,
    SearchResult,
)
from knowledge_retrieval.services.bm25.index import highlight_matches
from knowledge_retrieval.services.diagnostics import SearchDataCollector, analyze_effectiveness
from knowledge_retrieval.services.query_enhancer import QueryEnhancer, get_search_queries
from knowledge_retrieval.services.rerank_service import RerankService
from knowledge_retrieval.services.search_service import SearchService
from knowledge_retrieval.services.window_expander import WindowExpander
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("hybrid_search")

_WEIGHT_TOLERANCE = 1e-6


def normalize_weights(vector_weight: float, keyword_weight: float) -> Tuple[float, float]:
    """Scale weights to sum to 1, warning when they did not."""
    total = vector_weight + keyword_weight
    if total <= 0:
        raise ValueError("vector_weight and keyword_weight cannot both be zero")
    if abs(total - 1.0) > _WEIGHT_TOLERANCE:
        logger.warning(
            f"Search weights do not sum to 1, normalizing: vector_weight={vector_weight}, "
            f"keyword_weight={keyword_weight}"
        )
    return vector_weight / total, keyword_weight / total


def normalize_scores(results: Sequence[SearchResult]) -> List[SearchResult]:
    """Bound scores to [0, 1] by dividing by the maximum; lists already in range are returned as is."""
    if not results:
        return []
    top = max(r.score for r in results)
    if top <= 1.0:
        return list(results)
    return [r.model_copy(update={"score": r.score / top}) for r in results]


def merge_results(
    vector_results: Sequence[SearchResult],
    keyword_results: Sequence[SearchResult],
    vector_weight: float,
    keyword_weight: float,
) -> List[SearchResult]:
    """
    Merge two result lists by chunk id.

    Each source contributes `score * weight`; a chunk found by both gets
    the sum. Matched keywords and the highlighted rendering come from the
    keyword side. Output is sorted by merged score, descending.
    """
    merged: Dict[str, SearchResult] = {}
    for result in vector_results:
        merged[result.chunk_id] = result.model_copy(update={"score": result.score * vector_weight})

    for result in keyword_results:
        existing = merged.get(result.chunk_id)
        contribution = result.score * keyword_weight
        if existing is None:
            merged[result.chunk_id] = result.model_copy(update={"score": contribution})
            continue
        keywords = list(dict.fromkeys([*existing.matched_keywords, *result.matched_keywords]))
        merged[result.chunk_id] = existing.model_copy(
            update={
                "score": existing.score + contribution,
                "matched_keywords": keywords,
                "highlighted_content": highlight_matches(existing.content, keywords),
            }
        )

    return sorted(merged.values(), key=lambda r: r.score, reverse=True)


def _best_per_chunk(result_lists: Sequence[Sequence[SearchResult]]) -> List[SearchResult]:
    best: Dict[str, SearchResult] = {}
    for results in result_lists:
        for result in results:
            current = best.get(result.chunk_id)
            if current is None or result.score > current.score:
                best[result.chunk_id] = result
    return sorted(best.values(), key=lambda r: r.score, reverse=True)


class HybridSearchService:
    """
    Runs vector and keyword search concurrently and fuses their scores.

    Flow: optional query enhancement, then concurrent vector and BM25
    candidate retrieval (top_k x candidate_multiplier each, no score
    floor), BM25 scores above 1 scaled to [0, 1], weighted merge, threshold,
    optional rerank, top_k cut and optional window expansion.
    """

    def __init__(
        self,
        search_service: Optional[SearchService] = None,
        query_enhancer: Optional[QueryEnhancer] = None,
        rerank_service: Optional[RerankService] = None,
        window_expander: Optional[WindowExpander] = None,
    ):
        self.search_service = search_service or SearchService()
        self.query_enhancer = query_enhancer or QueryEnhancer()
        self.rerank_service = rerank_service or RerankService()
        self.window_expander = window_expander or WindowExpander(self.search_service.session_factory)

    async def _vector_candidates(
        self,
        knowledge_base_id: str,
        queries: Sequence[str],
        limit: int,
        options: HybridSearchOptions,
        collector: SearchDataCollector,
    ) -> Tuple[List[SearchResult], bool]:
        knowledge_base = await self.search_service.get_knowledge_base(knowledge_base_id)
        outcomes = await asyncio.gather(
            *(
                self.search_service.vector_search(
                    knowledge_base_id,
                    q,
                    top_k=limit,
                    threshold=0.0,
                    filter=options.filter,
                    collector=collector,
                    knowledge_base=knowledge_base,
                )
                for q in queries
            )
        )
        fallback_used = any(fallback for _, fallback in outcomes)
        return _best_per_chunk([results for results, _ in outcomes])[:limit], fallback_used

    async def search(
        self,
        knowledge_base_id: str,
        query: str,
        options: Optional[HybridSearchOptions] = None,
    ) -> HybridSearchResponse:
        options = options or HybridSearchOptions()
        collector = SearchDataCollector()
        vector_weight, keyword_weight = normalize_weights(options.vector_weight, options.keyword_weight)
        limit = options.top_k * get_settings().search.candidate_multiplier

        enhanced: Optional[EnhancedQuery] = None
        vector_queries = [query]
        keyword_query = query
        if options.enable_query_expansion:
            enhanced = await self.query_enhancer.enhance(query, options.enhance)
            vector_queries = get_search_queries(enhanced)
            keyword_query = " ".join(
                q for q in vector_queries if q != enhanced.hypothetical_answer
            )

        (vector_results, vector_fallback), (keyword_results, keyword_fallback) = await asyncio.gather(
            self._vector_candidates(knowledge_base_id, vector_queries, limit, options, collector),
            self.search_service.keyword_search(
                knowledge_base_id, keyword_query, top_k=limit, filter=options.filter, collector=collector
            ),
        )
        fallback_used = vector_fallback or keyword_fallback

        merged = merge_results(
            vector_results, normalize_scores(keyword_results), vector_weight, keyword_weight
        )
        results = [r for r in merged if r.score >= options.threshold]

        rerank_applied = False
        if options.enable_rerank and results:
            with collector.measure("rerank"):
                results, rerank_applied = await self.rerank_service.rerank(query, results)

        results = results[: options.top_k]

        if options.enable_window_expansion and results:
            results = await self.window_expander.expand(results, options.window)

        collector.record_search_mode("memory" if vector_fallback else "hybrid", fallback_used)
        logger.info(
            f"Hybrid search: knowledge_base_id={knowledge_base_id}, vector={len(vector_results)}, "
            f"keyword={len(keyword_results)}, returned={len(results)}, fallback_used={fallback_used}, "
            f"rerank_applied={rerank_applied}"
        )
        return HybridSearchResponse(
            query=query,
            results=results,
            fallback_used=fallback_used,
            rerank_applied=rerank_applied,
            enhanced_query=enhanced,
            metrics=collector.finalize(),
            effectiveness=analyze_effectiveness(results),
        )

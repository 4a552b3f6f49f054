"""BM25 keyword search: segmenter, inverted index and index cache."""

from knowledge_retrieval.services.bm25.cache import BM25IndexCache, get_bm25_cache
from knowledge_retrieval.services.bm25.index import (
    BM25Config,
    BM25Document,
    BM25Hit,
    BM25Index,
    BM25Stats,
    highlight_matches,
)
from knowledge_retrieval.services.bm25.segmenter import (
    analyze_query_intent,
    extract_keywords,
    normalize_query,
    segment,
)

__all__ = [
    "BM25Config",
    "BM25Document",
    "BM25Hit",
    "BM25Index",
    "BM25IndexCache",
    "BM25Stats",
    "analyze_query_intent",
    "extract_keywords",
    "get_bm25_cache",
    "highlight_matches",
    "normalize_query",
    "segment",
]

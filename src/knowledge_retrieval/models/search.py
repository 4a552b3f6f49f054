"""Search request/response models."""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, model_validator

from knowledge_retrieval.models.diagnostics import (
    SearchEffectivenessMetrics,
    SearchPerformanceMetrics,
)


class SearchResult(BaseModel):
    """A ranked chunk. Scores are backend-local until merged."""

    chunk_id: str
    document_id: str = ""
    document_name: str = ""
    content: str
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)
    matched_keywords: List[str] = Field(default_factory=list)
    highlighted_content: Optional[str] = None

    @classmethod
    def from_vector_record(
        cls,
        id: str,
        content: str,
        score: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "SearchResult":
        """Build a result from a vector store row whose metadata names its document."""
        metadata = metadata or {}
        return cls(
            chunk_id=id,
            document_id=str(metadata.get("document_id", "")),
            document_name=str(metadata.get("document_name", "")),
            content=content,
            score=float(score),
            metadata=metadata,
        )


class OriginalOffset(BaseModel):
    """Position of the original hit inside the expanded content."""

    start: int
    end: int


class ExpandedSearchResult(SearchResult):
    """Search result widened with neighbouring chunks."""

    expanded_content: str
    before_context: str = ""
    after_context: str = ""
    included_chunk_ids: List[str] = Field(default_factory=list)
    original_offset: OriginalOffset


class ChildOffset(BaseModel):
    start: int
    end: int


class ParentDocumentResult(SearchResult):
    """Child hits aggregated onto their parent chunk."""

    parent_id: str
    parent_content: str
    child_offsets: List[ChildOffset] = Field(default_factory=list)
    matched_child_ids: List[str] = Field(default_factory=list)


class WindowExpansionOptions(BaseModel):
    """Neighbour window configuration."""

    window_before: int = Field(default=1, ge=0)
    window_after: int = Field(default=1, ge=0)
    max_context_length: int = Field(default=2000, ge=0)
    preserve_boundaries: bool = True


class EnhanceOptions(BaseModel):
    """Which query-enhancement sub-tasks to run."""

    rewrite: bool = True
    expand: bool = True
    hyde: bool = False


class EnhancedQuery(BaseModel):
    """Output of the query enhancer. Only `original` is guaranteed."""

    original: str
    rewritten: Optional[str] = None
    expanded: Optional[List[str]] = None
    hypothetical_answer: Optional[str] = None


class HybridSearchOptions(BaseModel):
    """Hybrid search parameters, validated once at the boundary."""

    vector_weight: float = Field(default=0.7, ge=0.0)
    keyword_weight: float = Field(default=0.3, ge=0.0)
    top_k: int = Field(default=5, ge=1, le=100)
    threshold: float = Field(default=0.3)
    enable_rerank: bool = False
    enable_query_expansion: bool = False
    enable_window_expansion: bool = False
    enhance: EnhanceOptions = Field(default_factory=EnhanceOptions)
    window: WindowExpansionOptions = Field(default_factory=WindowExpansionOptions)
    filter: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def check_weights(self) -> "HybridSearchOptions":
        if self.vector_weight + self.keyword_weight <= 0:
            raise ValueError("vector_weight and keyword_weight cannot both be zero")
        return self


class HybridSearchResponse(BaseModel):
    """Hybrid search output with degradation and timing information."""

    query: str
    results: List[Union[ExpandedSearchResult, ParentDocumentResult, SearchResult]] = Field(
        default_factory=list
    )
    fallback_used: bool = False
    rerank_applied: bool = False
    enhanced_query: Optional[EnhancedQuery] = None
    metrics: Optional[SearchPerformanceMetrics] = None
    effectiveness: Optional[SearchEffectivenessMetrics] = None

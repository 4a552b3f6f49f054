"""Chunk models produced by the chunking service."""

from typing import Any, Dict, List

from pydantic import BaseModel, Field


class TextChunk(BaseModel):
    """A contiguous span of the source text."""

    chunk_index: int = Field(..., description="0-based index of this chunk within the document")
    content: str = Field(..., description="Chunk text content")
    start_offset: int = Field(..., ge=0, description="Start position in the original text")
    end_offset: int = Field(..., ge=0, description="End position (exclusive) in the original text")
    token_count: int = Field(default=0, ge=0, description="Token count of the chunk text")
    metadata: Dict[str, Any] = Field(
        default_factory=dict, description="Arbitrary metadata carried forward (parent id, etc.)"
    )


class ChildChunk(BaseModel):
    """Small chunk used for indexing in two-level mode."""

    id: str
    content: str
    index: int = Field(..., description="Global child index within the document")
    start_offset: int
    end_offset: int
    parent_id: str
    parent_index: int
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ParentChunk(BaseModel):
    """Large chunk that provides context for its children."""

    id: str
    content: str
    index: int
    start_offset: int
    end_offset: int
    children: List[ChildChunk] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TwoLevelChunkResult(BaseModel):
    """Parents, children and the child -> parent mapping."""

    parents: List[ParentChunk] = Field(default_factory=list)
    children: List[ChildChunk] = Field(default_factory=list)
    mapping: Dict[str, str] = Field(default_factory=dict)

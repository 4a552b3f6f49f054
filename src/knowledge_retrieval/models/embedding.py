"""Embedding models."""

from typing import List

from pydantic import BaseModel, Field


class EmbeddingResult(BaseModel):
    """Embedding vector for a single text."""

    embedding: List[float] = Field(..., description="Embedding vector")
    tokens: int = Field(default=0, ge=0, description="Tokens billed for this request")
    model: str = Field(..., description="Model used (after provider prefixing)")


class EmbeddingUsage(BaseModel):
    """Aggregated token usage reported to the usage sink."""

    provider: str
    model: str
    total_tokens: int = Field(default=0, ge=0)
    request_count: int = Field(default=0, ge=0)

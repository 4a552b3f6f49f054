"""Document processing models."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class DocumentStatus(str, Enum):
    """Document processing status."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ProcessingStage(str, Enum):
    """Pipeline stage that produced a failure."""

    PARSE = "parse"
    CHUNK = "chunk"
    EMBED = "embed"
    SAVE = "save"


class ParsedDocument(BaseModel):
    """Plain text plus metadata produced by a parser."""

    text: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ErrorDetails(BaseModel):
    stage: ProcessingStage
    message: str
    recoverable: bool


class ProcessResult(BaseModel):
    """Structured outcome of processing one document."""

    success: bool
    document_id: str
    chunk_count: int = 0
    error: Optional[str] = None
    error_details: Optional[ErrorDetails] = None


class ProcessOptions(BaseModel):
    """Per-document processing parameters."""

    chunk_size: int = Field(default=500, gt=0)
    chunk_overlap: int = Field(default=50, ge=0)


class DocumentInput(BaseModel):
    """A document submitted to the pipeline."""

    document_id: str
    knowledge_base_id: str
    file_name: str
    file_type: str = "txt"
    content: bytes = b""


class BatchProgress(BaseModel):
    """Progress callback payload."""

    completed: int
    total: int
    current: str
    result: Optional[ProcessResult] = None


class DocumentProgress(BaseModel):
    """Status counts for a knowledge base."""

    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


class ResyncResult(BaseModel):
    synced: int = 0
    failed: int = 0
    failed_ids: List[str] = Field(default_factory=list)

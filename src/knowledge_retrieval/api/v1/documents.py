"""Document ingestion endpoints."""

import base64
import binascii
from typing import Literal, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from knowledge_retrieval.api.dependencies import get_processor
from knowledge_retrieval.models.document import (
    DocumentInput,
    DocumentProgress,
    ProcessOptions,
    ProcessResult,
)
from knowledge_retrieval.services.document_processor import DocumentProcessor
from knowledge_retrieval.utils.errors import ValidationError
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("api.documents")

router = APIRouter(tags=["documents"])


class DocumentUploadRequest(BaseModel):
    """Document upload: text as-is, or base64 for binary formats such as pdf and docx."""

    file_name: str = Field(..., min_length=1, max_length=500)
    file_type: str = Field(default="txt", description="Parser selector: txt, md, pdf or docx")
    content: str = Field(..., description="Document text, or base64 bytes")
    content_encoding: Literal["text", "base64"] = "text"
    chunk_size: Optional[int] = Field(default=None, gt=0)
    chunk_overlap: Optional[int] = Field(default=None, ge=0)


class DocumentReprocessRequest(BaseModel):
    content: str = Field(..., description="Document content to process again")
    content_encoding: Literal["text", "base64"] = "text"
    chunk_size: Optional[int] = Field(default=None, gt=0)
    chunk_overlap: Optional[int] = Field(default=None, ge=0)


def _decode(content: str, encoding: str) -> bytes:
    if encoding == "text":
        return content.encode("utf-8")
    try:
        return base64.b64decode(content, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("content is not valid base64", errors={"content": str(e)}) from e


def _options(chunk_size: Optional[int], chunk_overlap: Optional[int]) -> Optional[ProcessOptions]:
    """Explicit options only when the caller set a size; otherwise the knowledge base defaults apply."""
    if chunk_size is None:
        return None
    if chunk_overlap is None:
        return ProcessOptions(chunk_size=chunk_size)
    return ProcessOptions(chunk_size=chunk_size, chunk_overlap=chunk_overlap)


@router.post(
    "/knowledge-bases/{knowledge_base_id}/documents",
    response_model=ProcessResult,
    status_code=status.HTTP_201_CREATED,
    summary="Upload and Process Document",
)
async def upload_document(
    knowledge_base_id: str,
    request: DocumentUploadRequest,
    processor: DocumentProcessor = Depends(get_processor),
):
    """
    Register a document and run it through the pipeline.

    A pipeline failure still answers 201: the document exists in FAILED
    state and the result carries the failing stage.
    """
    content = _decode(request.content, request.content_encoding)
    document_id = await processor.register_document(
        knowledge_base_id, request.file_name, request.file_type, len(content)
    )
    return await processor.process_document(
        DocumentInput(
            document_id=document_id,
            knowledge_base_id=knowledge_base_id,
            file_name=request.file_name,
            file_type=request.file_type,
            content=content,
        ),
        _options(request.chunk_size, request.chunk_overlap),
    )


@router.post(
    "/documents/{document_id}/reprocess",
    response_model=ProcessResult,
    status_code=status.HTTP_200_OK,
    summary="Reprocess Document",
)
async def reprocess_document(
    document_id: str,
    request: DocumentReprocessRequest,
    processor: DocumentProcessor = Depends(get_processor),
):
    return await processor.reprocess_document(
        document_id,
        _decode(request.content, request.content_encoding),
        _options(request.chunk_size, request.chunk_overlap),
    )


@router.get(
    "/documents/{document_id}/progress",
    response_model=DocumentProgress,
    status_code=status.HTTP_200_OK,
    summary="Knowledge Base Processing Progress",
)
async def document_progress(
    document_id: str,
    processor: DocumentProcessor = Depends(get_processor),
):
    """Status counts for the knowledge base the document belongs to."""
    return await processor.get_progress_for_document(document_id)

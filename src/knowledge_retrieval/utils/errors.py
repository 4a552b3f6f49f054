"""Custom exception classes for the Knowledge Retrieval service."""

from typing import Any, Dict, Optional


class KnowledgeException(Exception):
    """Base exception for all Knowledge Retrieval errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response."""
        return {
            "error": {
                "message": self.message,
                "code": self.code,
                "status_code": self.status_code,
                "details": self.details,
            }
        }


class ParsingError(KnowledgeException):
    """Exception raised for document parsing errors."""

    def __init__(
        self,
        message: str = "Document parsing failed",
        file_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if file_type:
            error_details["file_type"] = file_type
        super().__init__(
            message=message,
            status_code=422,
            code="PARSING_ERROR",
            details=error_details,
        )


class ChunkingError(KnowledgeException):
    """Exception raised for text chunking errors."""

    def __init__(
        self,
        message: str = "Text chunking failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=422,
            code="CHUNKING_ERROR",
            details=details,
        )


class EmbeddingError(KnowledgeException):
    """Exception raised for embedding generation errors."""

    retryable = False

    def __init__(
        self,
        message: str = "Embedding generation failed",
        model: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if model:
            error_details["model"] = model
        super().__init__(
            message=message,
            status_code=502,
            code="EMBEDDING_ERROR",
            details=error_details,
        )


class TransientEmbeddingError(EmbeddingError):
    """Embedding failure caused by a timeout, network fault or retryable HTTP status."""

    retryable = True


class VectorStoreError(KnowledgeException):
    """Exception raised for vector store operation errors."""

    def __init__(
        self,
        message: str = "Vector store operation failed",
        backend: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if backend:
            error_details["backend"] = backend
        super().__init__(
            message=message,
            status_code=502,
            code="VECTOR_STORE_ERROR",
            details=error_details,
        )


class DimensionMismatchError(KnowledgeException):
    """Raised when query and stored vectors have different dimensions."""

    def __init__(self, expected: int, actual: int, details: Optional[Dict[str, Any]] = None):
        error_details = details or {}
        error_details.update({"expected_dimension": expected, "actual_dimension": actual})
        super().__init__(
            message=f"Vector dimension mismatch: expected {expected}, got {actual}",
            status_code=422,
            code="DIMENSION_MISMATCH",
            details=error_details,
        )


class BM25Error(KnowledgeException):
    """Exception raised for keyword index errors."""

    def __init__(
        self,
        message: str = "BM25 index operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=500,
            code="BM25_ERROR",
            details=details,
        )


class EmptyKnowledgeBaseError(KnowledgeException):
    """Raised when searching a knowledge base that has no indexed chunks."""

    def __init__(self, knowledge_base_id: str):
        super().__init__(
            message=f"Knowledge base has no indexed content: {knowledge_base_id}",
            status_code=409,
            code="EMPTY_KNOWLEDGE_BASE",
            details={"knowledge_base_id": knowledge_base_id},
        )


class RerankError(KnowledgeException):
    """Exception raised for rerank endpoint errors."""

    def __init__(
        self,
        message: str = "Rerank request failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=502,
            code="RERANK_ERROR",
            details=details,
        )


class QueryEnhancementError(KnowledgeException):
    """Exception raised when an LLM query-enhancement call fails."""

    def __init__(
        self,
        message: str = "Query enhancement failed",
        model: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if model:
            error_details["model"] = model
        super().__init__(
            message=message,
            status_code=502,
            code="QUERY_ENHANCEMENT_ERROR",
            details=error_details,
        )


class DatabaseError(KnowledgeException):
    """Exception raised for database errors."""

    def __init__(
        self,
        message: str = "Database operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=500,
            code="DATABASE_ERROR",
            details=details,
        )


class ConfigurationError(KnowledgeException):
    """Exception raised for invalid configuration."""

    def __init__(
        self,
        message: str = "Invalid configuration",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=500,
            code="CONFIGURATION_ERROR",
            details=details,
        )


class ValidationError(KnowledgeException):
    """Exception raised for validation errors."""

    def __init__(
        self,
        message: str = "Validation failed",
        errors: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if errors:
            error_details["validation_errors"] = errors
        super().__init__(
            message=message,
            status_code=422,
            code="VALIDATION_ERROR",
            details=error_details,
        )


class NotFoundError(KnowledgeException):
    """Exception raised when a resource is not found."""

    def __init__(
        self,
        resource: str = "Resource",
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        message = f"{resource} not found"
        if resource_id:
            message += f" with id: {resource_id}"
        error_details = details or {}
        error_details["resource"] = resource
        if resource_id:
            error_details["resource_id"] = resource_id
        super().__init__(
            message=message,
            status_code=404,
            code="NOT_FOUND",
            details=error_details,
        )

"""Document chunk repository."""

import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_retrieval.database.models import DocumentChunk, KnowledgeDocument
from knowledge_retrieval.models.document import DocumentStatus
from knowledge_retrieval.repositories.base import BaseRepository
from knowledge_retrieval.utils.errors import DatabaseError
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("repositories")


def parse_embedding(raw: Any) -> Optional[List[float]]:
    """Decode a stored embedding that may be a JSON string or a native list."""
    if raw is None or raw == "":
        return None
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except ValueError:
            return None
    else:
        value = raw
    if not isinstance(value, list):
        return None
    try:
        return [float(v) for v in value]
    except (TypeError, ValueError):
        return None


def parse_metadata(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


class ChunkRepository(BaseRepository[DocumentChunk]):
    """Repository for document chunks."""

    def __init__(self, session: AsyncSession):
        super().__init__(DocumentChunk, session)

    async def create_many(self, rows: Sequence[Dict[str, Any]]) -> None:
        """Insert chunk rows in one flush."""
        try:
            self.session.add_all([DocumentChunk(**row) for row in rows])
            await self.session.flush()
        except SQLAlchemyError as e:
            logger.error(f"Error inserting {len(rows)} chunks: {e}")
            raise DatabaseError("Failed to insert document chunks") from e

    async def get_by_ids(self, ids: Sequence[str]) -> List[DocumentChunk]:
        if not ids:
            return []
        try:
            result = await self.session.execute(
                select(DocumentChunk).where(DocumentChunk.id.in_(list(ids)))
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error getting chunks by ids: {e}")
            raise DatabaseError("Failed to retrieve document chunks") from e

    async def get_by_document(
        self,
        document_id: str,
        start_index: Optional[int] = None,
        end_index: Optional[int] = None,
    ) -> List[DocumentChunk]:
        """Chunks of a document ordered by index, optionally within [start, end]."""
        try:
            query = select(DocumentChunk).where(DocumentChunk.document_id == document_id)
            if start_index is not None:
                query = query.where(DocumentChunk.chunk_index >= start_index)
            if end_index is not None:
                query = query.where(DocumentChunk.chunk_index <= end_index)
            result = await self.session.execute(query.order_by(DocumentChunk.chunk_index.asc()))
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error getting chunks for document {document_id}: {e}")
            raise DatabaseError("Failed to retrieve document chunks") from e

    async def get_neighbors(
        self, document_id: str, chunk_index: int, window_before: int, window_after: int
    ) -> Tuple[List[DocumentChunk], List[DocumentChunk]]:
        """Preceding and following chunks by contiguous index, both ascending."""
        before: List[DocumentChunk] = []
        after: List[DocumentChunk] = []
        if window_before > 0 and chunk_index > 0:
            before = await self.get_by_document(
                document_id, max(0, chunk_index - window_before), chunk_index - 1
            )
        if window_after > 0:
            after = await self.get_by_document(
                document_id, chunk_index + 1, chunk_index + window_after
            )
        return before, after

    async def get_completed_for_knowledge_base(
        self, knowledge_base_id: str
    ) -> List[Tuple[DocumentChunk, str]]:
        """All chunks of COMPLETED documents with their document file name."""
        try:
            result = await self.session.execute(
                select(DocumentChunk, KnowledgeDocument.file_name)
                .join(KnowledgeDocument, DocumentChunk.document_id == KnowledgeDocument.id)
                .where(
                    KnowledgeDocument.knowledge_base_id == knowledge_base_id,
                    KnowledgeDocument.status == DocumentStatus.COMPLETED.value,
                )
                .order_by(DocumentChunk.document_id, DocumentChunk.chunk_index)
            )
            return [(chunk, file_name) for chunk, file_name in result.all()]
        except SQLAlchemyError as e:
            logger.error(f"Error getting chunks for knowledge base {knowledge_base_id}: {e}")
            raise DatabaseError("Failed to retrieve knowledge base chunks") from e

    async def search_substring(
        self, knowledge_base_id: str, keywords: Sequence[str], limit: int
    ) -> List[Tuple[DocumentChunk, str]]:
        """Chunks of COMPLETED documents containing any of the (lowercase) keywords."""
        if not keywords:
            return []
        try:
            lowered = func.lower(DocumentChunk.content)
            result = await self.session.execute(
                select(DocumentChunk, KnowledgeDocument.file_name)
                .join(KnowledgeDocument, DocumentChunk.document_id == KnowledgeDocument.id)
                .where(
                    KnowledgeDocument.knowledge_base_id == knowledge_base_id,
                    KnowledgeDocument.status == DocumentStatus.COMPLETED.value,
                    or_(*[lowered.contains(keyword, autoescape=True) for keyword in keywords]),
                )
                .limit(limit)
            )
            return [(chunk, file_name) for chunk, file_name in result.all()]
        except SQLAlchemyError as e:
            logger.error(f"Error running substring search for knowledge base {knowledge_base_id}: {e}")
            raise DatabaseError("Failed to search document chunks") from e

    async def count_for_knowledge_base(self, knowledge_base_id: str) -> int:
        try:
            result = await self.session.execute(
                select(func.count())
                .select_from(DocumentChunk)
                .join(KnowledgeDocument, DocumentChunk.document_id == KnowledgeDocument.id)
                .where(
                    KnowledgeDocument.knowledge_base_id == knowledge_base_id,
                    KnowledgeDocument.status == DocumentStatus.COMPLETED.value,
                )
            )
            return result.scalar() or 0
        except SQLAlchemyError as e:
            logger.error(f"Error counting chunks for knowledge base {knowledge_base_id}: {e}")
            raise DatabaseError("Failed to count knowledge base chunks") from e

    async def get_ids_for_document(self, document_id: str) -> List[str]:
        try:
            result = await self.session.execute(
                select(DocumentChunk.id)
                .where(DocumentChunk.document_id == document_id)
                .order_by(DocumentChunk.chunk_index.asc())
            )
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error getting chunk ids for document {document_id}: {e}")
            raise DatabaseError("Failed to retrieve chunk ids") from e

    async def delete_by_document(self, document_id: str) -> int:
        """Delete every chunk of a document and return how many were removed."""
        try:
            result = await self.session.execute(
                delete(DocumentChunk).where(DocumentChunk.document_id == document_id)
            )
            return result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error(f"Error deleting chunks for document {document_id}: {e}")
            raise DatabaseError("Failed to delete document chunks") from e

"""Knowledge document repository."""

from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_retrieval.database.models import DocumentChunk, KnowledgeDocument
from knowledge_retrieval.models.document import DocumentStatus
from knowledge_retrieval.repositories.base import BaseRepository
from knowledge_retrieval.utils.errors import DatabaseError
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("repositories")


class DocumentRepository(BaseRepository[KnowledgeDocument]):
    """Repository for knowledge documents."""

    def __init__(self, session: AsyncSession):
        super().__init__(KnowledgeDocument, session)

    async def update_status(
        self,
        document_id: str,
        status: DocumentStatus,
        error_message: Optional[str] = None,
        max_error_length: int = 65000,
    ) -> Optional[KnowledgeDocument]:
        """Set the processing status; terminal states stamp `processed_at`."""
        values = {
            "status": status.value,
            "error_message": error_message[:max_error_length] if error_message else None,
        }
        if status in (DocumentStatus.COMPLETED, DocumentStatus.FAILED):
            values["processed_at"] = datetime.now(timezone.utc)
        return await self.update(document_id, **values)

    async def count_by_status(self, knowledge_base_id: str) -> Dict[str, int]:
        """Return `{status: count}` for a knowledge base."""
        try:
            result = await self.session.execute(
                select(KnowledgeDocument.status, func.count())
                .where(KnowledgeDocument.knowledge_base_id == knowledge_base_id)
                .group_by(KnowledgeDocument.status)
            )
            return {status: count for status, count in result.all()}
        except SQLAlchemyError as e:
            logger.error(f"Error counting documents for knowledge base {knowledge_base_id}: {e}")
            raise DatabaseError("Failed to count knowledge documents") from e

    async def delete_by_status(self, knowledge_base_id: str, status: DocumentStatus) -> int:
        """Bulk-delete documents in `status` together with their chunks."""
        document_ids = (
            select(KnowledgeDocument.id)
            .where(
                KnowledgeDocument.knowledge_base_id == knowledge_base_id,
                KnowledgeDocument.status == status.value,
            )
        )
        try:
            await self.session.execute(
                delete(DocumentChunk).where(DocumentChunk.document_id.in_(document_ids))
            )
            result = await self.session.execute(
                delete(KnowledgeDocument).where(
                    KnowledgeDocument.knowledge_base_id == knowledge_base_id,
                    KnowledgeDocument.status == status.value,
                )
            )
            return result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error(f"Error deleting {status.value} documents for knowledge base {knowledge_base_id}: {e}")
            raise DatabaseError("Failed to delete knowledge documents") from e

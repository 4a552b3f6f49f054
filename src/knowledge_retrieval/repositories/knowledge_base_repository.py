"""Knowledge base repository."""

import json
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_retrieval.database.models import KnowledgeBase
from knowledge_retrieval.models.vector import VectorStoreConfig
from knowledge_retrieval.repositories.base import BaseRepository
from knowledge_retrieval.utils.errors import DatabaseError
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("repositories")


class KnowledgeBaseRepository(BaseRepository[KnowledgeBase]):
    """Repository for knowledge base records."""

    def __init__(self, session: AsyncSession):
        super().__init__(KnowledgeBase, session)

    async def increment_chunk_count(self, knowledge_base_id: str, delta: int) -> None:
        """Atomically add `delta` (may be negative) to the chunk counter."""
        try:
            await self.session.execute(
                update(KnowledgeBase)
                .where(KnowledgeBase.id == knowledge_base_id)
                .values(chunk_count=KnowledgeBase.chunk_count + delta)
            )
        except SQLAlchemyError as e:
            logger.error(f"Error updating chunk count for knowledge base {knowledge_base_id}: {e}")
            raise DatabaseError("Failed to update knowledge base chunk count") from e

    async def increment_document_count(self, knowledge_base_id: str, delta: int) -> None:
        try:
            await self.session.execute(
                update(KnowledgeBase)
                .where(KnowledgeBase.id == knowledge_base_id)
                .values(document_count=KnowledgeBase.document_count + delta)
            )
        except SQLAlchemyError as e:
            logger.error(f"Error updating document count for knowledge base {knowledge_base_id}: {e}")
            raise DatabaseError("Failed to update knowledge base document count") from e

    @staticmethod
    def vector_store_config(
        knowledge_base: KnowledgeBase, dimension: int
    ) -> Optional[VectorStoreConfig]:
        """Decode the stored backend selection, or None when the KB has none."""
        if not knowledge_base.vector_store_type:
            return None
        options = json.loads(knowledge_base.vector_store_config or "{}")
        options["type"] = knowledge_base.vector_store_type
        options.setdefault("dimension", dimension)
        return VectorStoreConfig(**options)

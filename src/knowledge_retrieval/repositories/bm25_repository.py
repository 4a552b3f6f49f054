"""Persistence for serialized BM25 indexes."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_retrieval.database.models import BM25IndexRecord
from knowledge_retrieval.utils.errors import DatabaseError
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("repositories")


class BM25IndexRepository:
    """Repository for `BM25IndexRecord` keyed by knowledge base id."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, knowledge_base_id: str) -> Optional[BM25IndexRecord]:
        try:
            result = await self.session.execute(
                select(BM25IndexRecord).where(BM25IndexRecord.knowledge_base_id == knowledge_base_id)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Error loading BM25 index for knowledge base {knowledge_base_id}: {e}")
            raise DatabaseError("Failed to load BM25 index") from e

    async def upsert(
        self,
        knowledge_base_id: str,
        index_data: str,
        document_count: int,
        term_count: int,
    ) -> BM25IndexRecord:
        try:
            record = await self.get(knowledge_base_id)
            if record is None:
                record = BM25IndexRecord(knowledge_base_id=knowledge_base_id)
                self.session.add(record)
            record.index_data = index_data
            record.document_count = document_count
            record.term_count = term_count
            record.updated_at = datetime.now(timezone.utc)
            await self.session.flush()
            return record
        except SQLAlchemyError as e:
            logger.error(f"Error saving BM25 index for knowledge base {knowledge_base_id}: {e}")
            raise DatabaseError("Failed to save BM25 index") from e

    async def delete(self, knowledge_base_id: str) -> bool:
        try:
            result = await self.session.execute(
                delete(BM25IndexRecord).where(BM25IndexRecord.knowledge_base_id == knowledge_base_id)
            )
            return (result.rowcount or 0) > 0
        except SQLAlchemyError as e:
            logger.error(f"Error deleting BM25 index for knowledge base {knowledge_base_id}: {e}")
            raise DatabaseError("Failed to delete BM25 index") from e

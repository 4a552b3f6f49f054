"""Per-knowledge-base BM25 index cache with durable snapshots."""

import asyncio
import json
import time
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_retrieval.config import get_settings
from knowledge_retrieval.database.session import session_scope
from knowledge_retrieval.repositories.bm25_repository import BM25IndexRepository
from knowledge_retrieval.repositories.chunk_repository import ChunkRepository, parse_metadata
from knowledge_retrieval.services.bm25.index import BM25Config, BM25Document, BM25Index
from knowledge_retrieval.utils.errors import BM25Error
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("bm25.cache")


class BM25IndexCache:
    """
    TTL cache of BM25 indexes keyed by knowledge base id.

    Lookup order on `get_or_create`: a fresh in-memory entry, then the
    persisted snapshot, then a rebuild from the COMPLETED chunks of the
    knowledge base (which is persisted for the next restart). Concurrent
    callers missing on the same key share one load/rebuild.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        config: Optional[BM25Config] = None,
    ):
        self._session_factory = session_factory
        self.ttl_seconds = (
            ttl_seconds if ttl_seconds is not None else get_settings().bm25.cache_ttl_seconds
        )
        self._clock = clock
        self._config = config
        self._entries: Dict[str, Tuple[BM25Index, float]] = {}
        self._inflight: Dict[str, asyncio.Task] = {}

    def _remember(self, knowledge_base_id: str, index: BM25Index) -> None:
        self._entries[knowledge_base_id] = (index, self._clock())

    def get_cached(self, knowledge_base_id: str) -> Optional[BM25Index]:
        """The in-memory entry if it is younger than the TTL."""
        entry = self._entries.get(knowledge_base_id)
        if entry is None:
            return None
        index, stored_at = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[knowledge_base_id]
            return None
        return index

    async def load(self, knowledge_base_id: str) -> Optional[BM25Index]:
        """Memory entry or persisted snapshot; None when neither exists."""
        index = self.get_cached(knowledge_base_id)
        if index is not None:
            return index

        async with session_scope(self._session_factory) as session:
            record = await BM25IndexRepository(session).get(knowledge_base_id)
        if record is None:
            return None

        try:
            data = json.loads(record.index_data)
        except ValueError as e:
            logger.warning(f"Discarding unreadable BM25 snapshot: knowledge_base_id={knowledge_base_id}, error={e}")
            return None
        index = BM25Index(self._config)
        try:
            index.import_data(data)
        except BM25Error as e:
            logger.warning(f"Discarding invalid BM25 snapshot: knowledge_base_id={knowledge_base_id}, error={e.message}")
            return None
        self._remember(knowledge_base_id, index)
        logger.debug(f"BM25 index loaded from snapshot: knowledge_base_id={knowledge_base_id}")
        return index

    async def save(self, knowledge_base_id: str, index: BM25Index) -> None:
        """Persist a snapshot and refresh the memory entry."""
        stats = index.get_stats()
        async with session_scope(self._session_factory) as session:
            await BM25IndexRepository(session).upsert(
                knowledge_base_id,
                json.dumps(index.export_data(), ensure_ascii=False),
                document_count=stats.document_count,
                term_count=stats.term_count,
            )
        self._remember(knowledge_base_id, index)

    async def build(self, knowledge_base_id: str) -> BM25Index:
        """Index every chunk of the knowledge base's COMPLETED documents."""
        start = time.perf_counter()
        async with session_scope(self._session_factory) as session:
            rows = await ChunkRepository(session).get_completed_for_knowledge_base(knowledge_base_id)

        index = BM25Index(self._config)
        index.add_documents(
            BM25Document(
                id=chunk.id,
                content=chunk.content,
                metadata={
                    **parse_metadata(chunk.metadata_json),
                    "document_id": chunk.document_id,
                    "document_name": file_name,
                    "chunk_index": chunk.chunk_index,
                },
            )
            for chunk, file_name in rows
        )
        logger.info(
            f"BM25 index built: knowledge_base_id={knowledge_base_id}, "
            f"documents={index.document_count}, elapsed_ms={(time.perf_counter() - start) * 1000:.1f}"
        )
        return index

    async def _load_or_build(self, knowledge_base_id: str) -> BM25Index:
        index = await self.load(knowledge_base_id)
        if index is None:
            index = await self.build(knowledge_base_id)
            await self.save(knowledge_base_id, index)
        return index

    async def get_or_create(self, knowledge_base_id: str) -> BM25Index:
        index = self.get_cached(knowledge_base_id)
        if index is not None:
            return index

        task = self._inflight.get(knowledge_base_id)
        if task is None:
            task = asyncio.ensure_future(self._load_or_build(knowledge_base_id))
            self._inflight[knowledge_base_id] = task
            task.add_done_callback(lambda _: self._inflight.pop(knowledge_base_id, None))
        return await asyncio.shield(task)

    def invalidate(self, knowledge_base_id: str) -> None:
        """Drop the memory entry only; the persisted snapshot is kept."""
        self._entries.pop(knowledge_base_id, None)

    async def delete(self, knowledge_base_id: str) -> None:
        """Drop both the memory entry and the persisted snapshot."""
        self.invalidate(knowledge_base_id)
        async with session_scope(self._session_factory) as session:
            await BM25IndexRepository(session).delete(knowledge_base_id)
        logger.info(f"BM25 index deleted: knowledge_base_id={knowledge_base_id}")

    def clear(self) -> None:
        self._entries.clear()


_cache: Optional[BM25IndexCache] = None


def get_bm25_cache() -> BM25IndexCache:
    """Get the process-wide cache."""
    global _cache
    if _cache is None:
        _cache = BM25IndexCache()
    return _cache

"""Pytest configuration and fixtures."""

import hashlib
import json
import math
import re
from typing import List, Tuple

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from knowledge_retrieval.database.models import (
    Base,
    DocumentChunk,
    KnowledgeBase,
    KnowledgeDocument,
)
from knowledge_retrieval.services.bm25.cache import BM25IndexCache
from knowledge_retrieval.services.bm25.index import BM25Config
from knowledge_retrieval.services.embedding_providers import EmbeddingProvider
from knowledge_retrieval.services.embedding_service import EmbeddingService
from knowledge_retrieval.services.vector_store.memory_store import MemoryVectorStore
from knowledge_retrieval.services.vector_store.registry import VectorStoreRegistry
from knowledge_retrieval.utils.background import BackgroundTaskRunner

# Test database URL (in-memory SQLite for unit tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

EMBEDDING_DIMENSION = 32
_WORD = re.compile(r"\w+")


def hash_embedding(text: str, dimension: int = EMBEDDING_DIMENSION) -> List[float]:
    """Deterministic bag-of-words vector: texts sharing words point the same way."""
    vector = [0.0] * dimension
    for word in _WORD.findall(text.lower()):
        bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % dimension
        vector[bucket] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        vector[0] = 1.0
        return vector
    return [v / norm for v in vector]


class HashEmbeddingProvider(EmbeddingProvider):
    """Offline provider; `failures` queues exceptions raised before succeeding."""

    name = "test"

    def __init__(self, model: str = "test-embedding"):
        super().__init__(model)
        self.calls = 0
        self.failures: List[Exception] = []

    async def _request(self, text: str) -> Tuple[list, int]:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return hash_embedding(text), len(_WORD.findall(text))


@pytest.fixture
async def engine():
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def embedding_dimension():
    return EMBEDDING_DIMENSION


@pytest.fixture
def provider_factory():
    return HashEmbeddingProvider


@pytest.fixture
def embedding_provider():
    return HashEmbeddingProvider()


@pytest.fixture
def background():
    return BackgroundTaskRunner()


@pytest.fixture
def embedding_service(embedding_provider, background):
    return EmbeddingService(
        provider=embedding_provider,
        background=background,
        max_retries=2,
        retry_base_delay=0,
        retry_max_delay=0,
        retry_jitter=0,
        batch_size=10,
        expected_dimension=EMBEDDING_DIMENSION,
    )


@pytest.fixture
def memory_store():
    return MemoryVectorStore(max_size=1000)


@pytest.fixture
def registry(memory_store):
    registry = VectorStoreRegistry()
    registry.register("kb-1", memory_store)
    return registry


@pytest.fixture
def bm25_cache(session_factory):
    return BM25IndexCache(
        session_factory=session_factory,
        ttl_seconds=300,
        config=BM25Config(use_jieba=False),
    )


@pytest.fixture
async def knowledge_base(session_factory):
    async with session_factory() as session:
        knowledge_base = KnowledgeBase(
            id="kb-1",
            name="Test knowledge base",
            embedding_provider="compatible",
            embedding_model="test-embedding",
            chunk_size=200,
            chunk_overlap=20,
        )
        session.add(knowledge_base)
        await session.commit()
    return knowledge_base


@pytest.fixture
def add_document(session_factory):
    """Factory inserting a PENDING document row."""

    async def _add(document_id: str, file_name: str, knowledge_base_id: str = "kb-1") -> None:
        async with session_factory() as session:
            session.add(
                KnowledgeDocument(
                    id=document_id,
                    knowledge_base_id=knowledge_base_id,
                    file_name=file_name,
                    file_type="txt",
                    status="PENDING",
                )
            )
            await session.commit()

    return _add


@pytest.fixture
def seed_chunks(session_factory):
    """Factory inserting a COMPLETED document whose chunks are `contents`, in order."""

    async def _seed(
        document_id: str,
        file_name: str,
        contents: List[str],
        knowledge_base_id: str = "kb-1",
        with_embeddings: bool = True,
    ) -> List[str]:
        chunk_ids = [f"{document_id}-{i}" for i in range(len(contents))]
        async with session_factory() as session:
            session.add(
                KnowledgeDocument(
                    id=document_id,
                    knowledge_base_id=knowledge_base_id,
                    file_name=file_name,
                    file_type="txt",
                    status="COMPLETED",
                    chunk_count=len(contents),
                )
            )
            offset = 0
            for index, (chunk_id, content) in enumerate(zip(chunk_ids, contents)):
                session.add(
                    DocumentChunk(
                        id=chunk_id,
                        document_id=document_id,
                        content=content,
                        chunk_index=index,
                        start_offset=offset,
                        end_offset=offset + len(content),
                        embedding=json.dumps(hash_embedding(content)) if with_embeddings else None,
                    )
                )
                offset += len(content)
            await session.commit()
        return chunk_ids

    return _seed

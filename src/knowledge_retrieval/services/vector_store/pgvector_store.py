"""PostgreSQL pgvector backend."""

import json
import re
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from knowledge_retrieval.config import VectorStoreType, get_settings
from knowledge_retrieval.database.connection import create_engine
from knowledge_retrieval.models.search import SearchResult
from knowledge_retrieval.models.vector import (
    UpsertResult,
    VectorDocument,
    VectorSearchOptions,
    VectorStoreStats,
)
from knowledge_retrieval.services.vector_store.base import VectorStore
from knowledge_retrieval.utils.errors import (
    ConfigurationError,
    DimensionMismatchError,
    VectorStoreError,
)
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("vector_store.pgvector")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def safe_identifier(name: str) -> str:
    """Validate a SQL identifier that has to be interpolated into a statement."""
    if not _IDENTIFIER.match(name):
        raise ConfigurationError(f"Invalid SQL identifier: {name!r}")
    return name


def to_vector_literal(vector: Sequence[float]) -> str:
    return "[" + ",".join(repr(float(v)) for v in vector) + "]"


def parse_vector(value: Any) -> List[float]:
    """pgvector returns `[0.1,0.2,...]` text unless a codec is registered."""
    if isinstance(value, (list, tuple)):
        return [float(v) for v in value]
    if isinstance(value, str):
        cleaned = value.strip().lstrip("[").rstrip("]")
        return [float(v) for v in cleaned.split(",") if v.strip()]
    return []


class PgVectorStore(VectorStore):
    """
    Vectors in a pgvector table keyed by `(collection_id, id)`.

    The table, the vector index (HNSW or IVFFlat), the collection index and a
    GIN index on metadata are created on first use. Scores are cosine
    similarity, `1 - (embedding <=> query)`.
    """

    backend = VectorStoreType.PGVECTOR.value

    def __init__(
        self,
        connection_url: Optional[str] = None,
        table_name: Optional[str] = None,
        dimension: int = 1536,
        index_type: Optional[str] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        config = get_settings().vector_store
        self.table_name = safe_identifier(table_name or config.pg_table_name)
        self.dimension = dimension
        self.index_type = (index_type or config.pg_index_type).lower()
        if self.index_type not in ("hnsw", "ivfflat"):
            raise ConfigurationError(f"Unsupported pgvector index type: {self.index_type}")
        self._hnsw_m = config.pg_hnsw_m
        self._hnsw_ef_construction = config.pg_hnsw_ef_construction
        self._ivfflat_lists = config.pg_ivfflat_lists
        self._batch_size = config.upsert_batch_size
        self._connection_url = connection_url or config.pg_url
        self._engine = engine
        self._owns_engine = engine is None
        self._initialized = False

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_engine(self._connection_url)
        return self._engine

    async def initialize(self) -> None:
        if self._initialized:
            return
        table = self.table_name
        try:
            async with self.engine.begin() as conn:
                await conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
                await conn.execute(
                    text(
                        f"""
                        CREATE TABLE IF NOT EXISTS {table} (
                            id TEXT NOT NULL,
                            collection_id TEXT NOT NULL,
                            content TEXT,
                            embedding vector({int(self.dimension)}),
                            metadata JSONB DEFAULT '{{}}',
                            created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
                            updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
                            PRIMARY KEY (collection_id, id)
                        )
                        """
                    )
                )
                index_name = safe_identifier(f"idx_{table}_embedding_{self.index_type}")
                if self.index_type == "hnsw":
                    index_sql = (
                        f"CREATE INDEX IF NOT EXISTS {index_name} ON {table} "
                        f"USING hnsw (embedding vector_cosine_ops) "
                        f"WITH (m = {int(self._hnsw_m)}, ef_construction = {int(self._hnsw_ef_construction)})"
                    )
                else:
                    index_sql = (
                        f"CREATE INDEX IF NOT EXISTS {index_name} ON {table} "
                        f"USING ivfflat (embedding vector_cosine_ops) WITH (lists = {int(self._ivfflat_lists)})"
                    )
                await conn.execute(text(index_sql))
                await conn.execute(
                    text(
                        f"CREATE INDEX IF NOT EXISTS {safe_identifier(f'idx_{table}_collection')} "
                        f"ON {table} (collection_id)"
                    )
                )
                await conn.execute(
                    text(
                        f"CREATE INDEX IF NOT EXISTS {safe_identifier(f'idx_{table}_metadata')} "
                        f"ON {table} USING gin (metadata)"
                    )
                )
        except SQLAlchemyError as e:
            logger.error(f"pgvector initialization failed: table={table}, error={e}")
            raise VectorStoreError("Failed to initialize pgvector table", backend=self.backend) from e

        self._initialized = True
        logger.info(f"pgvector store initialized: table={table}, index={self.index_type}")

    async def upsert(
        self, collection_id: str, documents: Sequence[VectorDocument]
    ) -> List[UpsertResult]:
        if not documents:
            return []
        await self.initialize()

        statement = text(
            f"""
            INSERT INTO {self.table_name} (id, collection_id, content, embedding, metadata, updated_at)
            VALUES (:id, :collection_id, :content, CAST(:embedding AS vector), CAST(:metadata AS jsonb), NOW())
            ON CONFLICT (collection_id, id) DO UPDATE SET
                content = EXCLUDED.content,
                embedding = EXCLUDED.embedding,
                metadata = EXCLUDED.metadata,
                updated_at = NOW()
            """
        )

        results: List[UpsertResult] = []
        for batch in self.batches(documents, self._batch_size):
            try:
                async with self.engine.begin() as conn:
                    for doc in batch:
                        # A savepoint per row keeps one bad row from aborting the batch
                        try:
                            async with conn.begin_nested():
                                await conn.execute(
                                    statement,
                                    {
                                        "id": doc.id,
                                        "collection_id": collection_id,
                                        "content": doc.content,
                                        "embedding": to_vector_literal(doc.embedding),
                                        "metadata": json.dumps(doc.metadata, default=str),
                                    },
                                )
                            results.append(UpsertResult(id=doc.id, success=True))
                        except SQLAlchemyError as e:
                            logger.warning(f"pgvector upsert failed: id={doc.id}, error={e}")
                            results.append(UpsertResult(id=doc.id, success=False, error=str(e)))
            except SQLAlchemyError as e:
                logger.error(f"pgvector upsert batch failed: collection={collection_id}, error={e}")
                done = {r.id for r in results}
                results.extend(
                    UpsertResult(id=doc.id, success=False, error=str(e))
                    for doc in batch
                    if doc.id not in done
                )
        return results

    async def search(
        self,
        collection_id: str,
        query_vector: Sequence[float],
        options: Optional[VectorSearchOptions] = None,
    ) -> List[SearchResult]:
        options = options or VectorSearchOptions()
        if len(query_vector) != self.dimension:
            raise DimensionMismatchError(self.dimension, len(query_vector))
        await self.initialize()

        params: Dict[str, Any] = {
            "query": to_vector_literal(query_vector),
            "collection_id": collection_id,
            "top_k": options.top_k,
        }
        conditions = ["collection_id = :collection_id"]
        if options.filter:
            # Same JSON containment test as the match_vectors function
            params["filter"] = json.dumps(options.filter, ensure_ascii=False)
            conditions.append("metadata @> CAST(:filter AS jsonb)")
        if options.threshold > 0:
            params["threshold"] = options.threshold
            conditions.append("1 - (embedding <=> CAST(:query AS vector)) >= :threshold")

        statement = text(
            f"""
            SELECT id, content, metadata, 1 - (embedding <=> CAST(:query AS vector)) AS score
            FROM {self.table_name}
            WHERE {' AND '.join(conditions)}
            ORDER BY embedding <=> CAST(:query AS vector)
            LIMIT :top_k
            """
        )
        try:
            async with self.engine.connect() as conn:
                rows = (await conn.execute(statement, params)).mappings().all()
        except SQLAlchemyError as e:
            logger.error(f"pgvector search failed: collection={collection_id}, error={e}")
            raise VectorStoreError("pgvector search failed", backend=self.backend) from e

        return [
            SearchResult.from_vector_record(
                row["id"], row["content"] or "", float(row["score"]), _as_dict(row["metadata"])
            )
            for row in rows
        ]

    async def delete(self, collection_id: str, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        await self.initialize()
        statement = text(
            f"DELETE FROM {self.table_name} WHERE collection_id = :collection_id AND id IN :ids"
        ).bindparams(bindparam("ids", expanding=True))
        return await self._execute_count(statement, {"collection_id": collection_id, "ids": list(ids)})

    async def delete_all(self, collection_id: str) -> int:
        await self.initialize()
        statement = text(f"DELETE FROM {self.table_name} WHERE collection_id = :collection_id")
        return await self._execute_count(statement, {"collection_id": collection_id})

    async def _execute_count(self, statement, params: Dict[str, Any]) -> int:
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(statement, params)
                return result.rowcount or 0
        except SQLAlchemyError as e:
            logger.error(f"pgvector delete failed: error={e}")
            raise VectorStoreError("pgvector delete failed", backend=self.backend) from e

    async def count(self, collection_id: str) -> int:
        await self.initialize()
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(
                    text(f"SELECT COUNT(*) FROM {self.table_name} WHERE collection_id = :collection_id"),
                    {"collection_id": collection_id},
                )
                return int(result.scalar() or 0)
        except SQLAlchemyError as e:
            raise VectorStoreError("pgvector count failed", backend=self.backend) from e

    async def get(self, collection_id: str, ids: Sequence[str]) -> List[VectorDocument]:
        if not ids:
            return []
        await self.initialize()
        statement = text(
            f"SELECT id, content, embedding::text AS embedding, metadata FROM {self.table_name} "
            f"WHERE collection_id = :collection_id AND id IN :ids"
        ).bindparams(bindparam("ids", expanding=True))
        try:
            async with self.engine.connect() as conn:
                rows = (
                    await conn.execute(statement, {"collection_id": collection_id, "ids": list(ids)})
                ).mappings().all()
        except SQLAlchemyError as e:
            raise VectorStoreError("pgvector get failed", backend=self.backend) from e
        return [
            VectorDocument(
                id=row["id"],
                content=row["content"] or "",
                embedding=parse_vector(row["embedding"]),
                metadata=_as_dict(row["metadata"]),
            )
            for row in rows
        ]

    async def health_check(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"pgvector health check failed: {e}")
            return False

    async def get_stats(self) -> VectorStoreStats:
        await self.initialize()
        try:
            async with self.engine.connect() as conn:
                row = (
                    await conn.execute(
                        text(
                            f"SELECT COUNT(DISTINCT collection_id) AS collections, COUNT(*) AS total "
                            f"FROM {self.table_name}"
                        )
                    )
                ).mappings().one()
        except SQLAlchemyError as e:
            raise VectorStoreError("pgvector stats failed", backend=self.backend) from e
        return VectorStoreStats(
            backend=self.backend,
            collections=int(row["collections"] or 0),
            total_vectors=int(row["total"] or 0),
            details={"dimension": self.dimension, "index_type": self.index_type},
        )

    async def optimize_index(self) -> None:
        """Run VACUUM ANALYZE after large writes (VACUUM needs autocommit)."""
        await self.initialize()
        try:
            async with self.engine.connect() as conn:
                conn = await conn.execution_options(isolation_level="AUTOCOMMIT")
                await conn.execute(text(f"VACUUM ANALYZE {self.table_name}"))
        except SQLAlchemyError as e:
            logger.error(f"pgvector optimize failed: table={self.table_name}, error={e}")
            raise VectorStoreError("pgvector optimize failed", backend=self.backend) from e
        logger.info(f"pgvector index optimized: table={self.table_name}")

    async def set_search_params(
        self, ef_search: Optional[int] = None, probes: Optional[int] = None
    ) -> None:
        """Set `hnsw.ef_search` or `ivfflat.probes` for the database role."""
        if self.index_type == "hnsw" and ef_search:
            setting, value = "hnsw.ef_search", int(ef_search)
        elif self.index_type == "ivfflat" and probes:
            setting, value = "ivfflat.probes", int(probes)
        else:
            return
        async with self.engine.begin() as conn:
            await conn.execute(text(f"SET {setting} = {value}"))

    async def close(self) -> None:
        if self._engine is not None and self._owns_engine:
            await self._engine.dispose()
            self._engine = None
            self._initialized = False
            logger.info("pgvector engine disposed")


def _as_dict(value: Any) -> Dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value:
        try:
            decoded = json.loads(value)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}

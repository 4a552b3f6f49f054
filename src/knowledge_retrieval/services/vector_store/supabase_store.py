"""Supabase backend: PostgREST table plus a server-side match function."""

from typing import Any, List, Optional, Sequence

import httpx

from knowledge_retrieval.config import VectorStoreType, get_settings
from knowledge_retrieval.models.search import SearchResult
from knowledge_retrieval.models.vector import (
    UpsertResult,
    VectorDocument,
    VectorSearchOptions,
    VectorStoreStats,
)
from knowledge_retrieval.services.vector_store.base import VectorStore
from knowledge_retrieval.services.vector_store.pgvector_store import parse_vector, safe_identifier
from knowledge_retrieval.utils.errors import ConfigurationError, VectorStoreError
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("vector_store.supabase")

# PostgREST / Postgres codes meaning the table or function is missing
_MISSING_RELATION_CODES = {"PGRST204", "PGRST205", "42P01"}


def _in_filter(values: Sequence[str]) -> str:
    quoted = ",".join('"' + str(v).replace('"', '\\"') + '"' for v in values)
    return f"in.({quoted})"


def _content_range_total(response: httpx.Response) -> int:
    """Total from a `Content-Range: 0-9/42` (or `*/42`) header."""
    content_range = response.headers.get("content-range", "")
    if "/" not in content_range:
        return 0
    total = content_range.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else 0


class SupabaseVectorStore(VectorStore):
    """
    Vectors stored in a Supabase table and searched through an RPC.

    Search is delegated to the server-side function (`match_vectors` by
    default), which receives `query_embedding`, `match_threshold`,
    `match_count`, `collection_id_filter` and `filter` and returns rows of
    `{id, content, metadata, similarity}`. Run `initialization_sql()` in the
    Supabase SQL editor to create the table, indexes and function.
    """

    backend = VectorStoreType.SUPABASE.value

    def __init__(
        self,
        url: Optional[str] = None,
        key: Optional[str] = None,
        table_name: Optional[str] = None,
        function_name: Optional[str] = None,
        dimension: int = 1536,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        config = get_settings().vector_store
        url = url or config.supabase_url
        key = key or config.supabase_key
        if not (url and key):
            raise ConfigurationError("Supabase vector store requires a URL and a service key")
        self.table_name = safe_identifier(table_name or config.supabase_table_name)
        self.function_name = safe_identifier(function_name or config.supabase_function_name)
        self.dimension = dimension
        self._batch_size = config.upsert_batch_size
        self._client = httpx.AsyncClient(
            base_url=f"{url.rstrip('/')}/rest/v1",
            headers={
                "apikey": key,
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
            },
            timeout=timeout or config.supabase_timeout,
            transport=transport,
        )

    @property
    def _table_path(self) -> str:
        return f"/{self.table_name}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
            return response
        except httpx.TimeoutException as e:
            logger.error(f"Supabase request timeout: {method} {path}")
            raise VectorStoreError("Supabase request timed out", backend=self.backend) from e
        except httpx.HTTPStatusError as e:
            logger.error(
                f"Supabase request failed: {method} {path} status={e.response.status_code} "
                f"body={e.response.text[:500]}"
            )
            raise VectorStoreError(
                f"Supabase request failed with status {e.response.status_code}",
                backend=self.backend,
                details={"status_code": e.response.status_code},
            ) from e
        except httpx.RequestError as e:
            logger.error(f"Supabase request error: {method} {path} error={e}")
            raise VectorStoreError("Supabase request failed", backend=self.backend) from e

    async def upsert(
        self, collection_id: str, documents: Sequence[VectorDocument]
    ) -> List[UpsertResult]:
        results: List[UpsertResult] = []
        for batch in self.batches(documents, self._batch_size):
            rows = [
                {
                    "id": doc.id,
                    "collection_id": collection_id,
                    "content": doc.content,
                    "metadata": doc.metadata,
                    "embedding": list(doc.embedding),
                }
                for doc in batch
            ]
            try:
                await self._request(
                    "POST",
                    self._table_path,
                    json=rows,
                    headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
                )
            except VectorStoreError as e:
                # The whole batch is reported failed
                logger.warning(
                    f"Supabase upsert batch failed: collection={collection_id}, size={len(batch)}"
                )
                results.extend(UpsertResult(id=doc.id, success=False, error=e.message) for doc in batch)
                continue
            results.extend(UpsertResult(id=doc.id, success=True) for doc in batch)
        return results

    async def search(
        self,
        collection_id: str,
        query_vector: Sequence[float],
        options: Optional[VectorSearchOptions] = None,
    ) -> List[SearchResult]:
        options = options or VectorSearchOptions()
        response = await self._request(
            "POST",
            f"/rpc/{self.function_name}",
            json={
                "query_embedding": list(query_vector),
                "match_threshold": options.threshold,
                "match_count": options.top_k,
                "collection_id_filter": collection_id,
                "filter": options.filter or {},
            },
        )
        rows = response.json() or []
        results = [
            SearchResult.from_vector_record(
                str(row["id"]),
                row.get("content") or "",
                float(row.get("similarity", 0.0)),
                row.get("metadata") or {},
            )
            for row in rows
        ]
        results = [r for r in results if r.score >= options.threshold]
        results.sort(key=lambda r: r.score, reverse=True)
        return results[: options.top_k]

    async def delete(self, collection_id: str, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        response = await self._request(
            "DELETE",
            self._table_path,
            params={"collection_id": f"eq.{collection_id}", "id": _in_filter(ids)},
            headers={"Prefer": "count=exact,return=minimal"},
        )
        return _content_range_total(response)

    async def delete_all(self, collection_id: str) -> int:
        response = await self._request(
            "DELETE",
            self._table_path,
            params={"collection_id": f"eq.{collection_id}"},
            headers={"Prefer": "count=exact,return=minimal"},
        )
        return _content_range_total(response)

    async def count(self, collection_id: str) -> int:
        response = await self._request(
            "HEAD",
            self._table_path,
            params={"select": "id", "collection_id": f"eq.{collection_id}"},
            headers={"Prefer": "count=exact"},
        )
        return _content_range_total(response)

    async def get(self, collection_id: str, ids: Sequence[str]) -> List[VectorDocument]:
        if not ids:
            return []
        response = await self._request(
            "GET",
            self._table_path,
            params={
                "select": "id,content,embedding,metadata",
                "collection_id": f"eq.{collection_id}",
                "id": _in_filter(ids),
            },
        )
        return [
            VectorDocument(
                id=str(row["id"]),
                content=row.get("content") or "",
                embedding=parse_vector(row.get("embedding")),
                metadata=row.get("metadata") or {},
            )
            for row in response.json() or []
        ]

    async def health_check(self) -> bool:
        try:
            response = await self._client.get(
                self._table_path, params={"select": "id", "limit": "1"}
            )
        except httpx.HTTPError as e:
            logger.error(f"Supabase health check failed: {e}")
            return False
        if response.is_success:
            return True
        try:
            code = (response.json() or {}).get("code")
        except ValueError:
            code = None
        if code in _MISSING_RELATION_CODES:
            logger.warning(
                f"Supabase table {self.table_name} is missing; run SupabaseVectorStore.initialization_sql()"
            )
        return False

    async def get_stats(self) -> VectorStoreStats:
        return VectorStoreStats(
            backend=self.backend,
            details={"table": self.table_name, "function": self.function_name},
        )

    def initialization_sql(self) -> str:
        """SQL that creates the table, indexes and match function."""
        table = self.table_name
        fn = self.function_name
        dim = int(self.dimension)
        return f"""
create extension if not exists vector;

create table if not exists {table} (
  id text primary key,
  collection_id text not null,
  content text,
  metadata jsonb,
  embedding vector({dim})
);

create index if not exists {table}_embedding_idx
  on {table} using hnsw (embedding vector_cosine_ops);

create index if not exists {table}_collection_id_idx
  on {table} (collection_id);

create or replace function {fn} (
  query_embedding vector({dim}),
  match_threshold float,
  match_count int,
  collection_id_filter text,
  filter jsonb default '{{}}'
)
returns table (id text, content text, metadata jsonb, similarity float)
language plpgsql
as $$
begin
  return query
  select {table}.id, {table}.content, {table}.metadata,
         1 - ({table}.embedding <=> query_embedding) as similarity
  from {table}
  where {table}.collection_id = collection_id_filter
    and 1 - ({table}.embedding <=> query_embedding) >= match_threshold
    and {table}.metadata @> filter
  order by {table}.embedding <=> query_embedding
  limit match_count;
end;
$$;
"""

    async def close(self) -> None:
        await self._client.aclose()

"""Context window expansion around search hits."""

import re
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_retrieval.database.models import DocumentChunk
from knowledge_retrieval.database.session import session_scope
from knowledge_retrieval.models.search import (
    ExpandedSearchResult,
    OriginalOffset,
    SearchResult,
    WindowExpansionOptions,
)
from knowledge_retrieval.repositories.chunk_repository import ChunkRepository
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("window_expander")

ELLIPSIS = "..."
MIN_PARTIAL_LENGTH = 100
BOUNDARY_SEPARATOR = "\n\n---\n\n"
PLAIN_SEPARATOR = "\n\n"

_SENTENCE_END = re.compile(r"[。！？.!?]")


def truncate_from_start(text: str, max_length: int) -> str:
    """Keep the tail of `text`, starting after a sentence end when one is near the cut."""
    if len(text) <= max_length:
        return text
    keep = text[len(text) - max(0, max_length - len(ELLIPSIS)):]
    match = _SENTENCE_END.search(keep)
    if match and match.start() < len(keep) / 2:
        return ELLIPSIS + keep[match.start() + 1 :].strip()
    return ELLIPSIS + keep.strip()


def truncate_from_end(text: str, max_length: int) -> str:
    """Keep the head of `text`, ending at a sentence end when one is near the cut."""
    if len(text) <= max_length:
        return text
    keep = text[: max(0, max_length - len(ELLIPSIS))]
    last = -1
    for match in _SENTENCE_END.finditer(keep):
        last = match.start()
    if last > len(keep) / 2:
        return keep[: last + 1].strip() + ELLIPSIS
    return keep.strip() + ELLIPSIS


def combine_context(
    current: DocumentChunk,
    before: Sequence[DocumentChunk],
    after: Sequence[DocumentChunk],
    max_length: int,
    preserve_boundaries: bool,
) -> Tuple[str, str, List[str]]:
    """
    Stitch neighbours around the current chunk within `max_length`.

    The budget left after the current chunk is split in half for the
    preceding context; the following context may use whatever the
    preceding side left over. Separators and ellipsis markers count
    against the budget. A neighbour that does not fit is truncated when
    more than MIN_PARTIAL_LENGTH characters remain, otherwise dropped.

    Returns:
        (before_context, after_context, included_chunk_ids) where the ids
        list preceding chunks, then following chunks, then the current one.
    """
    separator = BOUNDARY_SEPARATOR if preserve_boundaries else PLAIN_SEPARATOR
    available = max(0, max_length - len(current.content))
    half = available // 2

    before_parts: List[str] = []
    before_ids: List[str] = []
    before_used = 0
    for chunk in reversed(before):
        cost = len(chunk.content) + len(separator)
        if before_used + cost > half:
            remaining = half - before_used - len(separator)
            if remaining > MIN_PARTIAL_LENGTH:
                part = truncate_from_start(chunk.content, remaining)
                before_parts.insert(0, part)
                before_ids.insert(0, chunk.id)
                before_used += len(part) + len(separator)
            break
        before_parts.insert(0, chunk.content)
        before_ids.insert(0, chunk.id)
        before_used += cost

    after_available = available - before_used
    after_parts: List[str] = []
    after_ids: List[str] = []
    after_used = 0
    for chunk in after:
        cost = len(chunk.content) + len(separator)
        if after_used + cost > after_available:
            remaining = after_available - after_used - len(separator)
            if remaining > MIN_PARTIAL_LENGTH:
                part = truncate_from_end(chunk.content, remaining)
                after_parts.append(part)
                after_ids.append(chunk.id)
            break
        after_parts.append(chunk.content)
        after_ids.append(chunk.id)
        after_used += cost

    before_context = "".join(part + separator for part in before_parts)
    after_context = "".join(separator + part for part in after_parts)
    return before_context, after_context, [*before_ids, *after_ids, current.id]


def _expanded(
    result: SearchResult,
    before_context: str,
    hit_content: str,
    after_context: str,
    included_chunk_ids: List[str],
) -> ExpandedSearchResult:
    data = result.model_dump()
    data.update(
        expanded_content=before_context + hit_content + after_context,
        before_context=before_context,
        after_context=after_context,
        included_chunk_ids=included_chunk_ids,
        original_offset=OriginalOffset(
            start=len(before_context), end=len(before_context) + len(hit_content)
        ),
    )
    return ExpandedSearchResult(**data)


class WindowExpander:
    """Widens search hits with neighbouring chunks of the same document."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    async def expand(
        self,
        results: Sequence[SearchResult],
        options: Optional[WindowExpansionOptions] = None,
    ) -> List[ExpandedSearchResult]:
        options = options or WindowExpansionOptions()
        if not results:
            return []

        expanded: List[ExpandedSearchResult] = []
        async with session_scope(self._session_factory) as session:
            repository = ChunkRepository(session)
            chunks: Dict[str, DocumentChunk] = {
                chunk.id: chunk for chunk in await repository.get_by_ids([r.chunk_id for r in results])
            }

            for result in results:
                chunk = chunks.get(result.chunk_id)
                if chunk is None:
                    # Not persisted (e.g. an in-memory-only hit): return it unexpanded
                    expanded.append(_expanded(result, "", result.content, "", [result.chunk_id]))
                    continue

                before, after = await repository.get_neighbors(
                    chunk.document_id, chunk.chunk_index, options.window_before, options.window_after
                )
                before_context, after_context, ids = combine_context(
                    chunk, before, after, options.max_context_length, options.preserve_boundaries
                )
                expanded.append(_expanded(result, before_context, chunk.content, after_context, ids))

        logger.debug(
            f"Expanded {len(expanded)} results: window_before={options.window_before}, "
            f"window_after={options.window_after}, max_context_length={options.max_context_length}"
        )
        return expanded

    async def get_document_chunks(
        self, document_id: str, start_index: Optional[int] = None, end_index: Optional[int] = None
    ) -> List[DocumentChunk]:
        """Chunks of a document in index order, optionally limited to [start, end]."""
        async with session_scope(self._session_factory) as session:
            return await ChunkRepository(session).get_by_document(document_id, start_index, end_index)


def merge_adjacent_results(
    results: Sequence[ExpandedSearchResult], max_gap: int = 1
) -> List[ExpandedSearchResult]:
    """
    Group expanded results by document.

    Only a stable sort by document id is applied; results are not merged.
    `max_gap` is accepted for callers that will rely on merging once
    adjacency rules are defined.
    """
    if len(results) <= 1:
        return list(results)
    return sorted(results, key=lambda r: r.document_id)

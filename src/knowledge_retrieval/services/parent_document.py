"""
Parent-document retrieval.

Documents are split twice: small child chunks are embedded and searched,
larger parent chunks supply the surrounding context returned to the caller.
"""

from typing import Dict, List, Optional, Sequence, Tuple

from knowledge_retrieval.models.chunk import ChildChunk, ParentChunk, TwoLevelChunkResult
from knowledge_retrieval.models.search import (
    ChildOffset,
    ParentDocumentResult,
    SearchResult,
)
from knowledge_retrieval.services.chunking_service import ChunkingService, get_chunking_service

DEFAULT_PARENT_CHUNK_SIZE = 2000
DEFAULT_PARENT_CHUNK_OVERLAP = 200
DEFAULT_CHILD_CHUNK_SIZE = 400
DEFAULT_CHILD_CHUNK_OVERLAP = 50


def create_two_level_chunks(
    text: str,
    parent_chunk_size: int = DEFAULT_PARENT_CHUNK_SIZE,
    parent_chunk_overlap: int = DEFAULT_PARENT_CHUNK_OVERLAP,
    child_chunk_size: int = DEFAULT_CHILD_CHUNK_SIZE,
    child_chunk_overlap: int = DEFAULT_CHILD_CHUNK_OVERLAP,
    document_id: str = "",
    chunker: Optional[ChunkingService] = None,
) -> TwoLevelChunkResult:
    """
    Split text into parent chunks, then split each parent into child chunks.

    Parent ids are `{document_id}-p{i}`; child ids are `{document_id}-c{n}` with
    `n` counted across the whole document. Child offsets are absolute positions
    in `text`.
    """
    chunker = chunker or get_chunking_service()
    parent_chunks = chunker.split_text(text, parent_chunk_size, parent_chunk_overlap)

    parents: List[ParentChunk] = []
    children: List[ChildChunk] = []
    mapping: Dict[str, str] = {}
    child_index = 0

    for parent_index, parent_chunk in enumerate(parent_chunks):
        parent_id = f"{document_id}-p{parent_index}"
        parent_children: List[ChildChunk] = []

        for child_chunk in chunker.split_text(
            parent_chunk.content, child_chunk_size, child_chunk_overlap
        ):
            child = ChildChunk(
                id=f"{document_id}-c{child_index}",
                content=child_chunk.content,
                index=child_index,
                start_offset=parent_chunk.start_offset + child_chunk.start_offset,
                end_offset=parent_chunk.start_offset + child_chunk.end_offset,
                parent_id=parent_id,
                parent_index=parent_index,
                metadata=child_chunk.metadata,
            )
            parent_children.append(child)
            children.append(child)
            mapping[child.id] = parent_id
            child_index += 1

        parents.append(
            ParentChunk(
                id=parent_id,
                content=parent_chunk.content,
                index=parent_index,
                start_offset=parent_chunk.start_offset,
                end_offset=parent_chunk.end_offset,
                children=parent_children,
                metadata=parent_chunk.metadata,
            )
        )

    return TwoLevelChunkResult(parents=parents, children=children, mapping=mapping)


def aggregate_to_parent_documents(
    child_results: Sequence[SearchResult],
    two_level: TwoLevelChunkResult,
) -> List[ParentDocumentResult]:
    """
    Group child hits under their parent chunk.

    Each parent takes the best child's fields and score; child offsets are
    relative to the parent content. Results are sorted by score, descending.
    """
    parents = {p.id: p for p in two_level.parents}
    children = {c.id: c for c in two_level.children}

    grouped: Dict[str, List[Tuple[SearchResult, ChildChunk]]] = {}
    for result in child_results:
        child = children.get(result.chunk_id)
        if child is None or child.parent_id not in parents:
            continue
        grouped.setdefault(child.parent_id, []).append((result, child))

    aggregated: List[ParentDocumentResult] = []
    for parent_id, matches in grouped.items():
        parent = parents[parent_id]
        matches.sort(key=lambda m: m[0].score, reverse=True)
        best = matches[0][0]
        aggregated.append(
            ParentDocumentResult(
                **best.model_dump(),
                parent_id=parent_id,
                parent_content=parent.content,
                child_offsets=[
                    ChildOffset(
                        start=child.start_offset - parent.start_offset,
                        end=child.end_offset - parent.start_offset,
                    )
                    for _, child in matches
                ],
                matched_child_ids=[child.id for _, child in matches],
            )
        )

    aggregated.sort(key=lambda r: r.score, reverse=True)
    return aggregated


def highlight_matched_children(
    parent_content: str,
    child_offsets: Sequence[ChildOffset],
    start_tag: str = "【",
    end_tag: str = "】",
) -> str:
    """Wrap matched child ranges in tags, merging overlapping ranges first."""
    if not child_offsets:
        return parent_content

    merged: List[List[int]] = []
    for offset in sorted(child_offsets, key=lambda o: o.start):
        if merged and offset.start <= merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], offset.end)
        else:
            merged.append([offset.start, offset.end])

    # Insert from the back so earlier offsets stay valid
    result = parent_content
    for start, end in reversed(merged):
        if start >= 0 and end <= len(result):
            result = result[:start] + start_tag + result[start:end] + end_tag + result[end:]
    return result


def get_parent_content(child_id: str, two_level: TwoLevelChunkResult) -> Optional[str]:
    parent_id = two_level.mapping.get(child_id)
    if parent_id is None:
        return None
    for parent in two_level.parents:
        if parent.id == parent_id:
            return parent.content or None
    return None

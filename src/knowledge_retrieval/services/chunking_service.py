"""Text chunking service: recursive separator splitting with character overlap."""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import tiktoken

from knowledge_retrieval.config import get_settings
from knowledge_retrieval.models.chunk import TextChunk
from knowledge_retrieval.utils.errors import ChunkingError
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("chunking_service")

# Highest priority first. "" means a hard cut at chunk_size.
DEFAULT_SEPARATORS: Tuple[str, ...] = (
    "\n\n",
    "\n",
    "。",
    "！",
    "？",
    ".",
    "!",
    "?",
    "；",
    ";",
    "，",
    ",",
    " ",
    "",
)


class ChunkingService:
    """
    Split text into overlapping chunks whose offsets point into the original text.

    Each chunk ends at the last occurrence of the highest-priority separator
    found inside its window, so pieces between separators are merged greedily
    up to `chunk_size`. Windows with no separator fall through to the next one,
    and finally to a fixed-length cut. The next chunk starts at
    `previous_end - chunk_overlap`, so no text between chunks is skipped.
    A window that would hold only whitespace is stretched to the next visible
    character; a whitespace run longer than `chunk_size` is the only way a
    chunk can exceed it.
    """

    def __init__(self, encoding_name: str = "cl100k_base"):
        self._encoding = tiktoken.get_encoding(encoding_name)

    def count_tokens(self, text: str) -> int:
        return len(self._encoding.encode(text))

    def split_text(
        self,
        text: str,
        chunk_size: int,
        chunk_overlap: int,
        separators: Optional[Sequence[str]] = None,
        base_metadata: Optional[Dict[str, Any]] = None,
    ) -> List[TextChunk]:
        """
        Split `text` into chunks.

        Args:
            text: Input text
            chunk_size: Maximum characters per chunk
            chunk_overlap: Characters shared by consecutive chunks (must be < chunk_size)
            separators: Priority-ordered separators (defaults to DEFAULT_SEPARATORS)
            base_metadata: Metadata copied onto every chunk

        Returns:
            Chunks with gap-free indices; empty input yields an empty list

        Raises:
            ChunkingError: If the size/overlap configuration is invalid
        """
        if chunk_size <= 0:
            raise ChunkingError("chunk_size must be > 0", details={"chunk_size": chunk_size})
        if chunk_overlap < 0:
            raise ChunkingError("chunk_overlap must be >= 0", details={"chunk_overlap": chunk_overlap})
        if chunk_overlap >= chunk_size:
            raise ChunkingError(
                "chunk_overlap must be less than chunk_size",
                details={"chunk_overlap": chunk_overlap, "chunk_size": chunk_size},
            )
        if not text:
            return []

        seps = list(separators) if separators else list(DEFAULT_SEPARATORS)
        if "" not in seps:
            seps.append("")

        lo = len(text) - len(text.lstrip())
        hi = len(text.rstrip())
        if lo >= hi:
            return []

        metadata = base_metadata or {}
        chunks: List[TextChunk] = []
        start = lo
        while start < hi:
            # Every chunk holds at least one non-whitespace character
            first_visible = hi - len(text[start:hi].lstrip())
            window = max(chunk_size, first_visible - start + 1)
            end = self._find_end(text, start, hi, window, chunk_overlap, seps, first_visible + 1)
            content = text[start:end]
            chunks.append(
                TextChunk(
                    chunk_index=len(chunks),
                    content=content,
                    start_offset=start,
                    end_offset=end,
                    token_count=self.count_tokens(content),
                    metadata={**metadata},
                )
            )
            if end >= hi:
                break
            start = max(0, end - chunk_overlap)

        logger.debug(
            f"Split text: length={hi - lo}, chunks={len(chunks)}, "
            f"chunk_size={chunk_size}, overlap={chunk_overlap}"
        )
        return chunks

    @staticmethod
    def _find_end(
        text: str,
        start: int,
        hi: int,
        chunk_size: int,
        chunk_overlap: int,
        separators: Sequence[str],
        min_end: int = 0,
    ) -> int:
        window_end = start + chunk_size
        if window_end >= hi:
            return hi

        # The cut must land past start + overlap so the next chunk advances
        min_end = max(min_end, start + chunk_overlap + 1)
        for sep in separators:
            if sep == "":
                return window_end
            pos = text.rfind(sep, start, window_end)
            if pos != -1 and pos + len(sep) >= min_end:
                return pos + len(sep)
        return window_end

    def chunk_document(
        self,
        text: str,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
        base_metadata: Optional[Dict[str, Any]] = None,
        document_id: str = "",
    ) -> List[TextChunk]:
        """
        Chunk a parsed document for indexing.

        Large chunk sizes (at or above the parent/child threshold) are treated as
        parent chunks: the indexed units are the smaller child chunks, each
        carrying its parent's id, content and offsets in metadata.
        """
        chunking = get_settings().chunking
        chunk_size = chunk_size or chunking.chunk_size
        chunk_overlap = chunk_overlap if chunk_overlap is not None else chunking.chunk_overlap

        if chunk_size < chunking.parent_child_threshold:
            return self.split_text(text, chunk_size, chunk_overlap, base_metadata=base_metadata)

        logger.info(
            f"Using parent/child chunking: parent={chunk_size}, child={chunking.child_chunk_size}"
        )
        # Imported here: parent_document depends on this module
        from knowledge_retrieval.services.parent_document import create_two_level_chunks

        two_level = create_two_level_chunks(
            text,
            parent_chunk_size=chunk_size,
            parent_chunk_overlap=chunk_overlap,
            child_chunk_size=chunking.child_chunk_size,
            child_chunk_overlap=min(chunking.child_chunk_overlap, chunking.child_chunk_size - 1),
            document_id=document_id,
            chunker=self,
        )
        parents = {p.id: p for p in two_level.parents}
        chunks: List[TextChunk] = []
        for child in two_level.children:
            parent = parents[child.parent_id]
            chunks.append(
                TextChunk(
                    chunk_index=child.index,
                    content=child.content,
                    start_offset=child.start_offset,
                    end_offset=child.end_offset,
                    token_count=self.count_tokens(child.content),
                    metadata={
                        **(base_metadata or {}),
                        "parent_id": parent.id,
                        "parent_index": parent.index,
                        "parent_content": parent.content,
                        "parent_start_offset": parent.start_offset,
                        "parent_end_offset": parent.end_offset,
                        "is_child_chunk": True,
                    },
                )
            )
        return chunks


_chunking_service: Optional[ChunkingService] = None


def get_chunking_service() -> ChunkingService:
    """Get the shared chunking service (the tiktoken encoding is loaded once)."""
    global _chunking_service
    if _chunking_service is None:
        _chunking_service = ChunkingService()
    return _chunking_service

"""Tests for the chunking service and parent-document retrieval."""

import random

import pytest

from knowledge_retrieval.models.search import ChildOffset, SearchResult
from knowledge_retrieval.services.chunking_service import ChunkingService
from knowledge_retrieval.services.parent_document import (
    aggregate_to_parent_documents,
    create_two_level_chunks,
    get_parent_content,
    highlight_matched_children,
)
from knowledge_retrieval.utils.errors import ChunkingError

SAMPLE_TEXT = (
    "Knowledge bases store documents. Each document is split into chunks.\n\n"
    "Chunks are embedded and indexed for search. Hybrid search combines vectors and keywords.\n\n"
    "Results can be expanded with neighbouring chunks to give the model more context. "
    "Reranking reorders candidates with a cross-encoder."
)


@pytest.fixture(scope="module")
def chunker():
    return ChunkingService()


def _reconstruct(chunks, chunk_overlap):
    if not chunks:
        return ""
    return chunks[0].content + "".join(c.content[chunk_overlap:] for c in chunks[1:])


class TestSplitText:
    """Tests for ChunkingService.split_text."""

    def test_short_sentences(self, chunker):
        chunks = chunker.split_text("A. B. C. D.", chunk_size=4, chunk_overlap=1)

        assert len(chunks) >= 3
        for chunk in chunks:
            assert len(chunk.content) <= 4

    def test_offsets_point_into_original_text(self, chunker):
        chunks = chunker.split_text(SAMPLE_TEXT, chunk_size=80, chunk_overlap=10)

        for chunk in chunks:
            assert SAMPLE_TEXT[chunk.start_offset : chunk.end_offset] == chunk.content

    def test_indices_are_gap_free(self, chunker):
        chunks = chunker.split_text(SAMPLE_TEXT, chunk_size=60, chunk_overlap=5)

        assert [c.chunk_index for c in chunks] == list(range(len(chunks)))

    def test_consecutive_chunks_overlap(self, chunker):
        chunks = chunker.split_text(SAMPLE_TEXT, chunk_size=80, chunk_overlap=10)

        assert len(chunks) > 1
        for previous, current in zip(chunks, chunks[1:]):
            assert current.start_offset == previous.end_offset - 10
            assert current.start_offset > previous.start_offset

    def test_chunk_size_is_respected(self, chunker):
        chunks = chunker.split_text(SAMPLE_TEXT, chunk_size=50, chunk_overlap=0)

        assert all(len(c.content) <= 50 for c in chunks)
        assert "".join(c.content for c in chunks) == SAMPLE_TEXT

    def test_prefers_paragraph_boundaries(self, chunker):
        chunks = chunker.split_text(SAMPLE_TEXT, chunk_size=120, chunk_overlap=0)

        assert chunks[0].content.endswith("\n\n")

    def test_whitespace_run_between_chunks_is_kept(self, chunker):
        text = " e\nalphaxc.c.e\nxalphae\n\n\n\n\nlongword tail"

        chunks = chunker.split_text(text, chunk_size=7, chunk_overlap=2)

        assert all(c.content.strip() for c in chunks)
        assert _reconstruct(chunks, 2) == text.strip()

    def test_overlap_reconstructs_random_text(self, chunker):
        rng = random.Random(7)
        pieces = ["alpha", "e", "x", "c.", "longword", " ", "\n", "\n\n\n", "   ", "。", "，"]

        for _ in range(300):
            text = "".join(rng.choice(pieces) for _ in range(rng.randint(1, 40)))
            chunk_size = rng.randint(2, 40)
            chunk_overlap = rng.randint(0, chunk_size - 1)

            chunks = chunker.split_text(text, chunk_size=chunk_size, chunk_overlap=chunk_overlap)

            assert _reconstruct(chunks, chunk_overlap) == text.strip()
            for chunk in chunks:
                leading = len(chunk.content) - len(chunk.content.lstrip())
                assert len(chunk.content) <= max(chunk_size, leading + 1)
                assert text[chunk.start_offset : chunk.end_offset] == chunk.content

    def test_empty_and_whitespace_text(self, chunker):
        assert chunker.split_text("", chunk_size=10, chunk_overlap=0) == []
        assert chunker.split_text("   \n\n  ", chunk_size=10, chunk_overlap=0) == []

    def test_text_shorter_than_chunk_size(self, chunker):
        chunks = chunker.split_text("  hello world  ", chunk_size=100, chunk_overlap=10)

        assert len(chunks) == 1
        assert chunks[0].content == "hello world"
        assert chunks[0].start_offset == 2

    def test_base_metadata_copied_per_chunk(self, chunker):
        chunks = chunker.split_text(SAMPLE_TEXT, 60, 0, base_metadata={"source": "faq"})

        assert all(c.metadata == {"source": "faq"} for c in chunks)
        chunks[0].metadata["source"] = "changed"
        assert chunks[1].metadata["source"] == "faq"

    def test_token_counts_populated(self, chunker):
        chunks = chunker.split_text(SAMPLE_TEXT, 80, 10)

        assert all(c.token_count > 0 for c in chunks)

    @pytest.mark.parametrize(
        "chunk_size,chunk_overlap",
        [(0, 0), (10, -1), (10, 10), (10, 20)],
    )
    def test_invalid_configuration(self, chunker, chunk_size, chunk_overlap):
        with pytest.raises(ChunkingError):
            chunker.split_text(SAMPLE_TEXT, chunk_size, chunk_overlap)


class TestChunkDocument:
    """Tests for ChunkingService.chunk_document."""

    def test_small_chunk_size_uses_flat_split(self, chunker):
        chunks = chunker.chunk_document(SAMPLE_TEXT, chunk_size=100, chunk_overlap=10)

        assert chunks
        assert not any(c.metadata.get("is_child_chunk") for c in chunks)

    def test_large_chunk_size_produces_child_chunks(self, chunker):
        text = SAMPLE_TEXT * 8
        chunks = chunker.chunk_document(text, chunk_size=1000, chunk_overlap=100, document_id="doc-1")

        assert chunks
        for chunk in chunks:
            assert chunk.metadata["is_child_chunk"] is True
            assert chunk.metadata["parent_id"].startswith("doc-1-p")
            assert chunk.content in chunk.metadata["parent_content"]
            assert text[chunk.start_offset : chunk.end_offset] == chunk.content


class TestParentDocument:
    """Tests for two-level chunking and aggregation."""

    @pytest.fixture
    def two_level(self, chunker):
        return create_two_level_chunks(
            SAMPLE_TEXT * 3,
            parent_chunk_size=200,
            parent_chunk_overlap=20,
            child_chunk_size=60,
            child_chunk_overlap=10,
            document_id="doc",
            chunker=chunker,
        )

    def test_children_reference_parents(self, two_level):
        parent_ids = {p.id for p in two_level.parents}

        assert two_level.children
        for child in two_level.children:
            assert child.parent_id in parent_ids
            assert two_level.mapping[child.id] == child.parent_id

    def test_child_ids_are_global(self, two_level):
        assert [c.index for c in two_level.children] == list(range(len(two_level.children)))
        assert two_level.children[0].id == "doc-c0"

    def test_child_offsets_are_absolute(self, two_level):
        text = SAMPLE_TEXT * 3
        for child in two_level.children:
            assert text[child.start_offset : child.end_offset] == child.content

    def test_aggregate_groups_children_under_parent(self, two_level):
        parent = two_level.parents[0]
        first, second = parent.children[0], parent.children[1]
        results = [
            SearchResult(chunk_id=first.id, document_id="doc", document_name="a.txt", content=first.content, score=0.5),
            SearchResult(chunk_id=second.id, document_id="doc", document_name="a.txt", content=second.content, score=0.9),
            SearchResult(chunk_id="unknown", document_id="doc", document_name="a.txt", content="x", score=1.0),
        ]

        aggregated = aggregate_to_parent_documents(results, two_level)

        assert len(aggregated) == 1
        assert aggregated[0].parent_id == parent.id
        assert aggregated[0].score == 0.9
        assert aggregated[0].matched_child_ids == [second.id, first.id]
        assert aggregated[0].child_offsets[1].start == first.start_offset - parent.start_offset

    def test_get_parent_content(self, two_level):
        child = two_level.children[0]

        assert get_parent_content(child.id, two_level) == two_level.parents[0].content
        assert get_parent_content("missing", two_level) is None


class TestHighlightMatchedChildren:
    """Tests for highlight_matched_children."""

    def test_wraps_ranges(self):
        result = highlight_matched_children("abcdefgh", [ChildOffset(start=2, end=4)])

        assert result == "ab【cd】efgh"

    def test_overlapping_ranges_are_merged(self):
        result = highlight_matched_children(
            "abcdefgh",
            [ChildOffset(start=4, end=6), ChildOffset(start=1, end=5)],
            start_tag="<",
            end_tag=">",
        )

        assert result == "a<bcdef>gh"

    def test_no_offsets(self):
        assert highlight_matched_children("abc", []) == "abc"

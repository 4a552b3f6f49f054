"""Tests for context window expansion."""

import pytest

from knowledge_retrieval.database.models import DocumentChunk
from knowledge_retrieval.models.search import (
    ExpandedSearchResult,
    OriginalOffset,
    SearchResult,
    WindowExpansionOptions,
)
from knowledge_retrieval.services.window_expander import (
    BOUNDARY_SEPARATOR,
    PLAIN_SEPARATOR,
    WindowExpander,
    combine_context,
    merge_adjacent_results,
    truncate_from_end,
    truncate_from_start,
)


def _chunk(id, content, index=0, document_id="doc"):
    return DocumentChunk(id=id, document_id=document_id, content=content, chunk_index=index)


def _expanded(chunk_id, document_id):
    return ExpandedSearchResult(
        chunk_id=chunk_id,
        document_id=document_id,
        content="x",
        score=0.5,
        expanded_content="x",
        original_offset=OriginalOffset(start=0, end=1),
    )


class TestTruncation:
    """Tests for the sentence-aware truncation helpers."""

    def test_short_text_unchanged(self):
        assert truncate_from_start("short", 10) == "short"
        assert truncate_from_end("short", 10) == "short"

    def test_truncate_from_end_cuts_at_sentence(self):
        text = "a" * 50 + ". " + "b" * 100

        assert truncate_from_end(text, 80) == "a" * 50 + "...."

    def test_truncate_from_start_cuts_at_sentence(self):
        text = "a" * 100 + ". " + "b" * 50

        assert truncate_from_start(text, 80) == "..." + "b" * 50

    def test_truncate_without_sentence_end(self):
        result = truncate_from_end("word " * 40, 50)

        assert result.endswith("...")
        assert len(result) <= 50


class TestCombineContext:
    """Tests for combine_context."""

    def test_neighbours_joined_with_boundary_separator(self):
        current = _chunk("c", "current chunk")
        before = [_chunk("b", "before chunk")]
        after = [_chunk("a", "after chunk")]

        before_context, after_context, ids = combine_context(current, before, after, 1000, True)

        assert before_context == "before chunk" + BOUNDARY_SEPARATOR
        assert after_context == BOUNDARY_SEPARATOR + "after chunk"
        assert ids == ["b", "a", "c"]

    def test_plain_separator(self):
        before_context, _, _ = combine_context(
            _chunk("c", "current"), [_chunk("b", "before")], [], 1000, False
        )

        assert before_context == "before" + PLAIN_SEPARATOR

    def test_following_context_uses_leftover_budget(self):
        current = _chunk("c", "c" * 100)
        before = [_chunk("b", "b" * 150)]
        after = [_chunk("a", "a" * 150)]

        before_context, after_context, ids = combine_context(current, before, after, 300, True)

        assert before_context == ""
        assert after_context == BOUNDARY_SEPARATOR + "a" * 150
        assert ids == ["a", "c"]

    def test_partial_neighbour_truncated(self):
        current = _chunk("c", "c" * 100)
        before = [_chunk("b", "word " * 80)]

        before_context, _, ids = combine_context(current, before, [], 600, True)

        assert before_context.startswith("...")
        assert len(before_context) <= 250
        assert ids == ["b", "c"]

    def test_total_length_within_budget(self):
        current = _chunk("c", "c" * 200)
        before = [_chunk(f"b{i}", "b" * 120, i) for i in range(3)]
        after = [_chunk(f"a{i}", "a" * 120, i + 4) for i in range(3)]

        before_context, after_context, _ = combine_context(current, before, after, 700, True)

        assert len(before_context) + 200 + len(after_context) <= 700

    def test_nearest_neighbours_preferred(self):
        current = _chunk("c", "c" * 10)
        before = [_chunk("far", "f" * 60, 0), _chunk("near", "n" * 60, 1)]

        _, _, ids = combine_context(current, before, [], 150, True)

        assert ids == ["near", "c"]


class TestWindowExpander:
    """Tests for WindowExpander.expand against persisted chunks."""

    @pytest.fixture
    async def chunk_ids(self, knowledge_base, seed_chunks):
        return await seed_chunks("doc-1", "guide.md", [f"chunk number {i}." for i in range(5)])

    @pytest.mark.asyncio
    async def test_expands_with_neighbours(self, session_factory, chunk_ids):
        expander = WindowExpander(session_factory)
        hit = SearchResult(chunk_id=chunk_ids[2], document_id="doc-1", content="chunk number 2.", score=0.9)

        [result] = await expander.expand([hit], WindowExpansionOptions(window_before=1, window_after=1))

        assert result.included_chunk_ids == [chunk_ids[1], chunk_ids[3], chunk_ids[2]]
        start, end = result.original_offset.start, result.original_offset.end
        assert result.expanded_content[start:end] == "chunk number 2."
        assert result.before_context.startswith("chunk number 1.")
        assert result.score == 0.9

    @pytest.mark.asyncio
    async def test_first_chunk_has_no_before_context(self, session_factory, chunk_ids):
        expander = WindowExpander(session_factory)
        hit = SearchResult(chunk_id=chunk_ids[0], content="chunk number 0.", score=0.9)

        [result] = await expander.expand([hit], WindowExpansionOptions(window_before=2, window_after=2))

        assert result.before_context == ""
        assert result.included_chunk_ids == [chunk_ids[1], chunk_ids[2], chunk_ids[0]]

    @pytest.mark.asyncio
    async def test_unknown_chunk_returned_unexpanded(self, session_factory, chunk_ids):
        expander = WindowExpander(session_factory)
        hit = SearchResult(chunk_id="memory-only", content="loose text", score=0.4)

        [result] = await expander.expand([hit])

        assert result.expanded_content == "loose text"
        assert result.included_chunk_ids == ["memory-only"]

    @pytest.mark.asyncio
    async def test_empty_results(self, session_factory):
        assert await WindowExpander(session_factory).expand([]) == []

    @pytest.mark.asyncio
    async def test_get_document_chunks(self, session_factory, chunk_ids):
        chunks = await WindowExpander(session_factory).get_document_chunks("doc-1", 1, 3)

        assert [c.id for c in chunks] == chunk_ids[1:4]


class TestMergeAdjacentResults:
    """Tests for merge_adjacent_results."""

    def test_stable_sort_by_document(self):
        results = [_expanded("1", "doc-b"), _expanded("2", "doc-a"), _expanded("3", "doc-b")]

        merged = merge_adjacent_results(results)

        assert [r.chunk_id for r in merged] == ["2", "1", "3"]

    def test_single_result(self):
        results = [_expanded("1", "doc")]

        assert merge_adjacent_results(results) == results

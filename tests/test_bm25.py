"""Tests for the BM25 segmenter, index and index cache."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from knowledge_retrieval.services.bm25.cache import BM25IndexCache
from knowledge_retrieval.services.bm25.index import BM25Config, BM25Index, highlight_matches
from knowledge_retrieval.services.bm25 import segmenter
from knowledge_retrieval.services.bm25.segmenter import (
    add_synonym,
    analyze_query_intent,
    expand_with_synonyms,
    extract_keywords,
    normalize_query,
    segment,
)
from knowledge_retrieval.utils.errors import BM25Error


@pytest.fixture
def config():
    return BM25Config(use_jieba=False)


@pytest.fixture
def index(config):
    index = BM25Index(config)
    index.add_document("a", "python python java")
    index.add_document("b", "python java java")
    index.add_document("c", "rust compiler tooling")
    return index


class TestSegmenter:
    """Tests for the tokenizer."""

    def test_english_stop_words_removed(self):
        assert segment("The quick brown fox", use_jieba=False) == ["quick", "brown", "fox"]

    def test_stop_words_kept_when_disabled(self):
        assert segment("the fox", remove_stop_words=False, use_jieba=False) == ["the", "fox"]

    def test_single_digits_dropped(self):
        assert segment("version 2 and 2024", use_jieba=False) == ["version", "2024"]

    def test_short_cjk_run_kept_whole(self):
        assert segment("知识库", use_jieba=False) == ["知识库"]

    def test_long_cjk_run_split_into_ngrams(self):
        tokens = segment("混合检索系统", use_jieba=False)

        assert "检索" in tokens
        assert "系统" in tokens
        assert "检索系" in tokens

    def test_empty_text(self):
        assert segment("   ", use_jieba=False) == []

    def test_jieba_drops_punctuation(self):
        tokens = segment("我们使用混合检索。", use_jieba=True)

        assert "。" not in tokens
        assert any("检索" in t for t in tokens)

    def test_normalize_query(self):
        assert normalize_query("hello,  world?") == "hello world"

    def test_extract_keywords(self):
        keywords = extract_keywords("search search index", use_jieba=False)

        assert keywords[0] == ("search", pytest.approx(2 / 3))
        assert keywords[1] == ("index", pytest.approx(1 / 3))

    def test_expand_with_synonyms(self):
        expanded = expand_with_synonyms(["数据库"])

        assert expanded[0] == "数据库"
        assert "db" in expanded

    def test_add_synonym_merges_without_duplicates(self):
        with patch.dict(segmenter._SYNONYMS, {"rag": ["retrieval"]}):
            add_synonym("rag", ["retrieval", "grounding"])

            assert expand_with_synonyms(["rag"]) == ["rag", "retrieval", "grounding"]

        assert "rag" not in segmenter._SYNONYMS

    @pytest.mark.parametrize(
        "query,expected",
        [
            ("how do I configure search", "question"),
            ("vector search latency?", "question"),
            ("python vector database index", "phrase"),
            ("python", "keyword"),
        ],
    )
    def test_query_intent(self, query, expected):
        assert analyze_query_intent(query, use_jieba=False)["query_type"] == expected


class TestBM25Index:
    """Tests for BM25Index."""

    def test_term_frequency_increases_score(self, index):
        hits = index.search("python")

        assert [h.id for h in hits] == ["a", "b"]
        assert hits[0].score > hits[1].score

    def test_rarer_terms_weigh_more(self, index):
        assert index.idf(1) > index.idf(2)

    def test_matched_terms(self, index):
        hits = index.search("python rust")

        matched = {h.id: h.matched_terms for h in hits}
        assert matched["a"] == ["python"]
        assert matched["c"] == ["rust"]

    def test_repeated_query_terms_count_once(self, index):
        single = index.search("python")[0].score
        repeated = index.search("python python python")[0].score

        assert repeated == pytest.approx(single)

    def test_stats_follow_documents(self, index):
        assert index.get_stats().document_count == 3
        assert index.avg_doc_length == pytest.approx(3.0)

        index.remove_document("c")

        assert index.document_count == 2
        assert index.search("rust") == []

    def test_add_replaces_same_id(self, index):
        index.add_document("a", "haskell")

        assert index.document_count == 3
        assert [h.id for h in index.search("python")] == ["b"]
        assert index.search("haskell")[0].id == "a"

    def test_top_k_and_empty_queries(self, index):
        assert index.search("python", top_k=0) == []
        assert len(index.search("python", top_k=1)) == 1
        assert index.search("the and of") == []

    def test_delta_lowers_scores(self):
        plain = BM25Index(BM25Config(use_jieba=False))
        damped = BM25Index(BM25Config(use_jieba=False, delta=1.0))
        for idx in (plain, damped):
            idx.add_document("a", "python java")
            idx.add_document("b", "rust")

        assert damped.search("python")[0].score < plain.search("python")[0].score

    def test_export_import(self, index):
        restored = BM25Index(BM25Config(use_jieba=False))
        restored.import_data(index.export_data())

        assert restored.get_stats() == index.get_stats()
        assert [(h.id, h.score) for h in restored.search("python java")] == [
            (h.id, h.score) for h in index.search("python java")
        ]

    def test_import_invalid_snapshot(self, config):
        with pytest.raises(BM25Error):
            BM25Index(config).import_data({"postings": "not a mapping"})

    def test_clear(self, index):
        index.clear()

        assert index.document_count == 0
        assert index.search("python") == []


class TestHighlightMatches:
    """Tests for highlight_matches."""

    def test_case_insensitive(self):
        assert highlight_matches("Python is great", ["python"]) == "**Python** is great"

    def test_longest_term_first(self):
        assert highlight_matches("vector search", ["vector", "vector search"]) == "**vector search**"

    def test_no_terms(self):
        assert highlight_matches("text", []) == "text"


class TestBM25IndexCache:
    """Tests for BM25IndexCache."""

    @pytest.fixture
    async def seeded(self, knowledge_base, seed_chunks):
        await seed_chunks("doc-1", "guide.md", ["hybrid search combines vectors", "keyword search uses bm25"])
        await seed_chunks("doc-2", "faq.md", ["rerank improves precision"])

    @pytest.mark.asyncio
    async def test_builds_from_completed_chunks(self, bm25_cache, seeded):
        index = await bm25_cache.get_or_create("kb-1")

        assert index.document_count == 3
        hit = index.search("rerank")[0]
        document = index.get_document(hit.id)
        assert document.metadata["document_id"] == "doc-2"
        assert document.metadata["document_name"] == "faq.md"

    @pytest.mark.asyncio
    async def test_snapshot_reused_by_new_cache(self, session_factory, bm25_cache, seeded, config):
        await bm25_cache.get_or_create("kb-1")
        fresh = BM25IndexCache(session_factory=session_factory, config=config)

        with patch.object(fresh, "build", new_callable=AsyncMock) as build:
            index = await fresh.get_or_create("kb-1")

        build.assert_not_called()
        assert index.document_count == 3

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, session_factory, seeded, config):
        now = [0.0]
        cache = BM25IndexCache(
            session_factory=session_factory, ttl_seconds=10, clock=lambda: now[0], config=config
        )

        await cache.get_or_create("kb-1")
        now[0] = 5.0
        assert cache.get_cached("kb-1") is not None

        now[0] = 10.0
        assert cache.get_cached("kb-1") is None

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_build(self, session_factory, seeded, config):
        cache = BM25IndexCache(session_factory=session_factory, config=config)
        built = BM25Index(config)

        with patch.object(cache, "build", new_callable=AsyncMock, return_value=built) as build:
            indexes = await asyncio.gather(*(cache.get_or_create("kb-1") for _ in range(5)))

        assert build.call_count == 1
        assert all(i is built for i in indexes)

    @pytest.mark.asyncio
    async def test_invalidate_keeps_snapshot(self, bm25_cache, seeded):
        await bm25_cache.get_or_create("kb-1")

        bm25_cache.invalidate("kb-1")

        assert bm25_cache.get_cached("kb-1") is None
        assert await bm25_cache.load("kb-1") is not None

    @pytest.mark.asyncio
    async def test_delete_removes_snapshot(self, bm25_cache, seeded):
        await bm25_cache.get_or_create("kb-1")

        await bm25_cache.delete("kb-1")

        assert bm25_cache.get_cached("kb-1") is None
        assert await bm25_cache.load("kb-1") is None

    @pytest.mark.asyncio
    async def test_rebuild_sees_new_chunks(self, bm25_cache, seeded, seed_chunks):
        await bm25_cache.get_or_create("kb-1")
        await seed_chunks("doc-3", "new.md", ["fresh content about qdrant"])

        await bm25_cache.delete("kb-1")
        index = await bm25_cache.get_or_create("kb-1")

        assert index.search("qdrant")

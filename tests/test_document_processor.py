"""Tests for the document processing pipeline."""

import io
from unittest.mock import AsyncMock, patch

import docx
import PyPDF2
import pytest
from sqlalchemy import func, select

from knowledge_retrieval.database.models import DocumentChunk, KnowledgeBase, KnowledgeDocument
from knowledge_retrieval.models.document import (
    DocumentInput,
    DocumentStatus,
    ProcessingStage,
    ProcessOptions,
)
from knowledge_retrieval.repositories.knowledge_base_repository import KnowledgeBaseRepository
from knowledge_retrieval.services.chunking_service import ChunkingService
from knowledge_retrieval.services.document_processor import (
    DocumentProcessor,
    DocxParser,
    PdfParser,
    PlainTextParser,
)
from knowledge_retrieval.utils.errors import NotFoundError, ParsingError, VectorStoreError

TEXT = (
    "Hybrid search blends dense vectors with BM25 keyword scores. "
    "Chunks are embedded in batches and written in one transaction. "
    "Failed documents keep the stage that broke in their error message. "
) * 4


@pytest.fixture
def chunker():
    return ChunkingService()


@pytest.fixture
def processor(session_factory, embedding_service, chunker, registry, bm25_cache, background):
    return DocumentProcessor(
        session_factory=session_factory,
        embedding_service=embedding_service,
        chunker=chunker,
        registry=registry,
        bm25_cache=bm25_cache,
        background=background,
    )


@pytest.fixture
def submit(processor, knowledge_base):
    """Register a document and build its pipeline input."""

    async def _submit(file_name="notes.txt", file_type="txt", content=TEXT.encode("utf-8")):
        document_id = await processor.register_document("kb-1", file_name, file_type, len(content))
        return DocumentInput(
            document_id=document_id,
            knowledge_base_id="kb-1",
            file_name=file_name,
            file_type=file_type,
            content=content,
        )

    return _submit


async def _document(session_factory, document_id):
    async with session_factory() as session:
        return await session.get(KnowledgeDocument, document_id)


async def _chunk_count(session_factory, document_id):
    async with session_factory() as session:
        result = await session.execute(
            select(func.count()).select_from(DocumentChunk).where(DocumentChunk.document_id == document_id)
        )
        return result.scalar_one()


class TestRegisterDocument:
    """Tests for DocumentProcessor.register_document."""

    @pytest.mark.asyncio
    async def test_creates_pending_document(self, processor, knowledge_base, session_factory):
        document_id = await processor.register_document("kb-1", "notes.md", ".MD", 42)

        document = await _document(session_factory, document_id)
        assert document.status == DocumentStatus.PENDING.value
        assert document.file_type == "md"
        assert document.file_size == 42
        async with session_factory() as session:
            assert (await session.get(KnowledgeBase, "kb-1")).document_count == 1

    @pytest.mark.asyncio
    async def test_unknown_knowledge_base(self, processor, knowledge_base):
        with pytest.raises(NotFoundError):
            await processor.register_document("kb-missing", "notes.txt", "txt")


class TestProcessDocument:
    """Tests for DocumentProcessor.process_document."""

    @pytest.mark.asyncio
    async def test_success(self, processor, submit, session_factory, memory_store, background):
        document = await submit()

        result = await processor.process_document(document)

        assert result.success is True
        assert result.error_details is None
        assert result.chunk_count > 1
        record = await _document(session_factory, document.document_id)
        assert record.status == DocumentStatus.COMPLETED.value
        assert record.chunk_count == result.chunk_count
        assert record.processed_at is not None
        assert record.error_message is None
        assert await _chunk_count(session_factory, document.document_id) == result.chunk_count
        async with session_factory() as session:
            assert (await session.get(KnowledgeBase, "kb-1")).chunk_count == result.chunk_count

        await background.drain()
        assert await memory_store.count("kb-1") == result.chunk_count

    @pytest.mark.asyncio
    async def test_vector_metadata(self, processor, submit, session_factory, memory_store, background):
        document = await submit(file_name="guide.txt")
        await processor.process_document(document)
        await background.drain()

        async with session_factory() as session:
            chunk = (
                await session.execute(
                    select(DocumentChunk).where(
                        DocumentChunk.document_id == document.document_id, DocumentChunk.chunk_index == 0
                    )
                )
            ).scalar_one()
        [stored] = await memory_store.get("kb-1", [chunk.id])

        assert stored.content == chunk.content
        assert stored.metadata["document_id"] == document.document_id
        assert stored.metadata["document_name"] == "guide.txt"
        assert stored.metadata["chunk_index"] == 0
        assert stored.metadata["knowledge_base_id"] == "kb-1"

    @pytest.mark.asyncio
    async def test_explicit_options(self, processor, submit):
        document = await submit()

        small = await processor.process_document(document, ProcessOptions(chunk_size=100, chunk_overlap=0))

        assert small.success is True
        assert small.chunk_count >= len(TEXT) // 100

    @pytest.mark.asyncio
    async def test_keyword_index_dropped(self, processor, submit, bm25_cache):
        document = await submit()

        with patch.object(bm25_cache, "delete", AsyncMock()) as mock_delete:
            await processor.process_document(document)

        mock_delete.assert_awaited_once_with("kb-1")

    @pytest.mark.asyncio
    async def test_unsupported_type(self, processor, submit, session_factory):
        document = await submit(file_name="sheet.xlsx", file_type="xlsx")

        result = await processor.process_document(document)

        assert result.success is False
        assert result.error_details.stage == ProcessingStage.PARSE
        assert result.error_details.recoverable is False
        record = await _document(session_factory, document.document_id)
        assert record.status == DocumentStatus.FAILED.value
        assert record.error_message.startswith("[parse] Unsupported file type: xlsx")

    @pytest.mark.asyncio
    async def test_invalid_utf8(self, processor, submit):
        result = await processor.process_document(await submit(content=b"\xff\xfe\xfa"))

        assert result.error_details.stage == ProcessingStage.PARSE
        assert "not valid UTF-8" in result.error

    @pytest.mark.asyncio
    async def test_empty_document(self, processor, submit):
        result = await processor.process_document(await submit(content=b""))

        assert result.success is False
        assert result.error_details.stage == ProcessingStage.CHUNK
        assert result.error_details.recoverable is False

    @pytest.mark.asyncio
    async def test_chunker_failure_is_recoverable(self, processor, submit, chunker):
        document = await submit()

        with patch.object(chunker, "chunk_document", side_effect=ValueError("bad separators")):
            result = await processor.process_document(document)

        assert result.error_details.stage == ProcessingStage.CHUNK
        assert result.error_details.recoverable is True
        assert result.error == "bad separators"

    @pytest.mark.asyncio
    async def test_rate_limited_embedding_then_reprocess(
        self, processor, submit, session_factory, embedding_provider
    ):
        document = await submit()
        embedding_provider.failures = [Exception("rate limit exceeded")] * 100

        result = await processor.process_document(document)
        embedding_provider.failures = []

        assert result.success is False
        assert result.error_details.stage == ProcessingStage.EMBED
        assert result.error_details.recoverable is True
        record = await _document(session_factory, document.document_id)
        assert record.status == DocumentStatus.FAILED.value
        assert record.error_message.startswith("[embed] ")
        assert await _chunk_count(session_factory, document.document_id) == 0

        retried = await processor.reprocess_document(document.document_id, document.content)

        assert retried.success is True
        record = await _document(session_factory, document.document_id)
        assert record.status == DocumentStatus.COMPLETED.value
        assert record.error_message is None

    @pytest.mark.asyncio
    async def test_save_failure_is_recoverable(self, processor, submit, session_factory):
        document = await submit()

        with patch.object(processor, "_persist", AsyncMock(side_effect=RuntimeError("disk full"))):
            result = await processor.process_document(document)

        assert result.error_details.stage == ProcessingStage.SAVE
        assert result.error_details.recoverable is True
        assert (await _document(session_factory, document.document_id)).error_message == "[save] disk full"

    @pytest.mark.asyncio
    async def test_save_is_all_or_nothing(self, processor, submit, session_factory):
        document = await submit()
        async with session_factory() as session:
            chunks_before = (await session.get(KnowledgeBase, "kb-1")).chunk_count

        with patch.object(
            KnowledgeBaseRepository,
            "increment_chunk_count",
            AsyncMock(side_effect=RuntimeError("counter update failed")),
        ):
            result = await processor.process_document(document)

        assert result.success is False
        assert result.error_details.stage == ProcessingStage.SAVE
        assert await _chunk_count(session_factory, document.document_id) == 0
        record = await _document(session_factory, document.document_id)
        assert record.status == DocumentStatus.FAILED.value
        assert record.error_message == "[save] counter update failed"
        async with session_factory() as session:
            assert (await session.get(KnowledgeBase, "kb-1")).chunk_count == chunks_before

    @pytest.mark.asyncio
    async def test_unknown_document(self, processor, knowledge_base):
        with pytest.raises(NotFoundError):
            await processor.process_document(
                DocumentInput(document_id="missing", knowledge_base_id="kb-1", file_name="x.txt")
            )

    @pytest.mark.asyncio
    async def test_unknown_knowledge_base(self, processor, submit):
        document = await submit()

        with pytest.raises(NotFoundError):
            await processor.process_document(document.model_copy(update={"knowledge_base_id": "kb-missing"}))


class TestReprocessDocument:
    """Tests for DocumentProcessor.reprocess_document."""

    @pytest.mark.asyncio
    async def test_replaces_chunks(self, processor, submit, session_factory, memory_store, background):
        document = await submit()
        first = await processor.process_document(document)
        await background.drain()

        second = await processor.reprocess_document(document.document_id, b"A much shorter replacement text.")
        await background.drain()

        assert first.chunk_count > 1
        assert second.chunk_count == 1
        assert await _chunk_count(session_factory, document.document_id) == 1
        assert await memory_store.count("kb-1") == 1
        async with session_factory() as session:
            assert (await session.get(KnowledgeBase, "kb-1")).chunk_count == 1

    @pytest.mark.asyncio
    async def test_unknown_document(self, processor, knowledge_base):
        with pytest.raises(NotFoundError):
            await processor.reprocess_document("missing", b"text")


class TestBatchAndProgress:
    """Tests for batch processing, progress and cleanup."""

    @pytest.mark.asyncio
    async def test_batch_keeps_input_order(self, processor, submit):
        documents = [
            await submit(file_name="a.txt"),
            await submit(file_name="b.xlsx", file_type="xlsx"),
            await submit(file_name="c.md", file_type="md"),
        ]
        updates = []

        results = await processor.process_batch(documents, concurrency=2, on_progress=updates.append)

        assert [r.document_id for r in results] == [d.document_id for d in documents]
        assert [r.success for r in results] == [True, False, True]
        assert len(updates) == 6
        assert updates[-1].completed == 3
        assert sum(1 for u in updates if u.result is not None) == 3

    @pytest.mark.asyncio
    async def test_batch_isolates_unexpected_errors(self, processor, submit):
        good = await submit()
        orphan = DocumentInput(document_id="missing", knowledge_base_id="kb-1", file_name="x.txt")

        results = await processor.process_batch([orphan, good])

        assert results[0].success is False
        assert "missing" in results[0].error
        assert results[1].success is True

    @pytest.mark.asyncio
    async def test_failing_progress_callback_is_ignored(self, processor, submit):
        def explode(progress):
            raise RuntimeError("ui gone")

        results = await processor.process_batch([await submit()], on_progress=explode)

        assert results[0].success is True

    @pytest.mark.asyncio
    async def test_progress_and_cleanup(self, processor, submit, session_factory):
        await processor.process_document(await submit())
        failed = await submit(file_name="bad.xlsx", file_type="xlsx")
        await processor.process_document(failed)
        pending = await submit(file_name="later.txt")

        progress = await processor.get_document_progress("kb-1")
        assert (progress.total, progress.pending, progress.completed, progress.failed) == (3, 1, 1, 1)
        assert await processor.get_progress_for_document(pending.document_id) == progress

        assert await processor.cleanup_failed_documents("kb-1") == 1
        assert await _document(session_factory, failed.document_id) is None
        progress = await processor.get_document_progress("kb-1")
        assert (progress.total, progress.failed) == (2, 0)
        async with session_factory() as session:
            assert (await session.get(KnowledgeBase, "kb-1")).document_count == 2

    @pytest.mark.asyncio
    async def test_progress_for_unknown_document(self, processor, knowledge_base):
        with pytest.raises(NotFoundError):
            await processor.get_progress_for_document("missing")


class TestVectorStoreMaintenance:
    """Tests for vector store delete and resync."""

    @pytest.mark.asyncio
    async def test_resync_restores_collection(self, processor, submit, memory_store, background):
        result = await processor.process_document(await submit())
        await background.drain()
        await memory_store.delete_all("kb-1")

        resync = await processor.resync_knowledge_base("kb-1")

        assert resync.synced == result.chunk_count
        assert resync.failed == 0
        assert await memory_store.count("kb-1") == result.chunk_count

    @pytest.mark.asyncio
    async def test_resync_skips_chunks_without_embeddings(self, processor, knowledge_base, seed_chunks):
        await seed_chunks("doc-1", "guide.md", ["one", "two"], with_embeddings=False)

        resync = await processor.resync_knowledge_base("kb-1")

        assert resync.synced == 0
        assert resync.failed_ids == ["doc-1-0", "doc-1-1"]

    @pytest.mark.asyncio
    async def test_resync_optimizes_index_after_writes(
        self, processor, knowledge_base, seed_chunks, memory_store
    ):
        await seed_chunks("doc-1", "guide.md", ["one", "two"])

        with patch.object(memory_store, "optimize_index", AsyncMock()) as optimize:
            await processor.resync_knowledge_base("kb-1")

        optimize.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_resync_survives_optimize_failure(
        self, processor, knowledge_base, seed_chunks, memory_store
    ):
        await seed_chunks("doc-1", "guide.md", ["one", "two"])

        with patch.object(
            memory_store, "optimize_index", AsyncMock(side_effect=VectorStoreError("vacuum failed"))
        ):
            resync = await processor.resync_knowledge_base("kb-1")

        assert resync.synced == 2

    @pytest.mark.asyncio
    async def test_delete_from_vector_store(self, processor, knowledge_base, seed_chunks, memory_store):
        await seed_chunks("doc-1", "guide.md", ["one", "two"])
        await processor.resync_knowledge_base("kb-1")

        assert await processor.delete_from_vector_store("kb-1", ["doc-1-0"]) == 1
        assert await memory_store.count("kb-1") == 1

    @pytest.mark.asyncio
    async def test_delete_failure_returns_zero(self, processor, knowledge_base, memory_store):
        with patch.object(memory_store, "delete", AsyncMock(side_effect=RuntimeError("offline"))):
            assert await processor.delete_from_vector_store("kb-1", ["x"]) == 0


class TestParsers:
    """Tests for the built-in parsers."""

    def test_parser_for_normalizes_type(self, processor):
        assert isinstance(processor.parser_for(".MD"), PlainTextParser)

    def test_unsupported_type(self, processor):
        with pytest.raises(ParsingError):
            processor.parser_for("xlsx")

    @pytest.mark.asyncio
    async def test_plain_text_metadata(self):
        parsed = await PlainTextParser().parse("\ufeffone two\nthree".encode("utf-8"), "a.txt")

        assert parsed.text == "one two\nthree"
        assert parsed.metadata == {"character_count": 13, "word_count": 3, "line_count": 2}

    def test_default_parsers_cover_office_formats(self, processor):
        assert isinstance(processor.parser_for("pdf"), PdfParser)
        assert isinstance(processor.parser_for("DOCX"), DocxParser)

    @pytest.mark.asyncio
    async def test_docx_paragraphs_and_tables(self):
        document = docx.Document()
        document.add_paragraph("Retrieval overview")
        document.add_paragraph("   ")
        table = document.add_table(rows=1, cols=2)
        table.rows[0].cells[0].text = "k1"
        table.rows[0].cells[1].text = "1.5"
        buffer = io.BytesIO()
        document.save(buffer)

        parsed = await DocxParser().parse(buffer.getvalue(), "overview.docx")

        assert parsed.text == "Retrieval overview\n\nk1 | 1.5"
        assert parsed.metadata["word_count"] == 5

    @pytest.mark.asyncio
    async def test_pdf_without_text_layer(self):
        writer = PyPDF2.PdfWriter()
        writer.add_blank_page(width=200, height=200)
        buffer = io.BytesIO()
        writer.write(buffer)

        with pytest.raises(ParsingError, match="No text could be extracted"):
            await PdfParser().parse(buffer.getvalue(), "scan.pdf")

    @pytest.mark.asyncio
    async def test_corrupt_pdf(self, processor, submit):
        result = await processor.process_document(
            await submit(file_name="broken.pdf", file_type="pdf", content=b"not a pdf")
        )

        assert result.error_details.stage == ProcessingStage.PARSE
        assert result.error.startswith("PDF file is corrupted or invalid")

"""
Document processing pipeline.

Each document moves PENDING -> PROCESSING -> COMPLETED | FAILED through
parse, chunk, embed and persist. Persisting is one transaction: the chunk
rows, the COMPLETED status and the knowledge base chunk counter are
written together or not at all. Syncing vectors to the knowledge base's
vector store happens afterwards in the background and never changes the
document status.
"""

import asyncio
import io
import json
import re
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_retrieval.config import get_settings
from knowledge_retrieval.database.models import KnowledgeBase
from knowledge_retrieval.database.session import session_scope
from knowledge_retrieval.models.chunk import TextChunk
from knowledge_retrieval.models.document import (
    BatchProgress,
    DocumentInput,
    DocumentProgress,
    DocumentStatus,
    ErrorDetails,
    ParsedDocument,
    ProcessingStage,
    ProcessOptions,
    ProcessResult,
    ResyncResult,
)
from knowledge_retrieval.models.embedding import EmbeddingResult
from knowledge_retrieval.models.vector import VectorDocument
from knowledge_retrieval.repositories.chunk_repository import (
    ChunkRepository,
    parse_embedding,
    parse_metadata,
)
from knowledge_retrieval.repositories.document_repository import DocumentRepository
from knowledge_retrieval.repositories.knowledge_base_repository import KnowledgeBaseRepository
from knowledge_retrieval.services.bm25.cache import BM25IndexCache, get_bm25_cache
from knowledge_retrieval.services.chunking_service import ChunkingService, get_chunking_service
from knowledge_retrieval.services.embedding_providers import get_embedding_dimension
from knowledge_retrieval.services.embedding_service import EmbeddingService, get_embedding_service
from knowledge_retrieval.services.vector_store.base import VectorStore
from knowledge_retrieval.services.vector_store.registry import (
    VectorStoreRegistry,
    get_vector_store_registry,
)
from knowledge_retrieval.utils.background import BackgroundTaskRunner, get_background_runner
from knowledge_retrieval.utils.errors import NotFoundError, ParsingError, VectorStoreError
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("document_processor")

ProgressCallback = Callable[[BatchProgress], None]


class DocumentParser(ABC):
    """Turns raw upload bytes into text."""

    file_types: Sequence[str] = ()

    @abstractmethod
    async def parse(self, content: bytes, file_name: str) -> ParsedDocument:
        """
        Raises:
            ParsingError: If the content cannot be read
        """


class PlainTextParser(DocumentParser):
    """UTF-8 text and markdown."""

    file_types = ("txt", "text", "md", "markdown")

    async def parse(self, content: bytes, file_name: str) -> ParsedDocument:
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise ParsingError(f"File is not valid UTF-8 text: {file_name}", file_type="txt") from e

        return ParsedDocument(
            text=text,
            metadata={
                "character_count": len(text),
                "word_count": len(re.findall(r"\b\w+\b", text)),
                "line_count": text.count("\n") + 1 if text else 0,
            },
        )


class PdfParser(DocumentParser):
    """Text layer of a PDF via PyPDF2; image-only PDFs are rejected."""

    file_types = ("pdf",)

    async def parse(self, content: bytes, file_name: str) -> ParsedDocument:
        import PyPDF2

        try:
            reader = PyPDF2.PdfReader(io.BytesIO(content))
            pages = list(reader.pages)
        except Exception as e:
            raise ParsingError(f"PDF file is corrupted or invalid: {e}", file_type="pdf") from e

        text_parts = []
        for page_number, page in enumerate(pages, start=1):
            try:
                page_text = page.extract_text() or ""
            except Exception as e:
                logger.warning(f"Failed to extract text from page {page_number} in {file_name}: {e}")
                continue
            if page_text.strip():
                text_parts.append(page_text)

        if not text_parts:
            raise ParsingError(
                "No text could be extracted from PDF. The file may be image-based or corrupted.",
                file_type="pdf",
            )

        text = "\n\n".join(text_parts)
        info = reader.metadata or {}
        return ParsedDocument(
            text=text,
            metadata={
                "page_count": len(pages),
                "character_count": len(text),
                "word_count": len(re.findall(r"\b\w+\b", text)),
                "title": info.get("/Title"),
                "author": info.get("/Author"),
            },
        )


class DocxParser(DocumentParser):
    """Paragraphs, then table rows joined with ` | `."""

    file_types = ("docx",)

    async def parse(self, content: bytes, file_name: str) -> ParsedDocument:
        from docx import Document

        try:
            document = Document(io.BytesIO(content))
        except Exception as e:
            raise ParsingError(f"Failed to parse DOCX: {e}", file_type="docx") from e

        text_parts = [p.text for p in document.paragraphs if p.text.strip()]
        for table in document.tables:
            for row in table.rows:
                row_text = " | ".join(cell.text.strip() for cell in row.cells if cell.text.strip())
                if row_text:
                    text_parts.append(row_text)

        if not text_parts:
            raise ParsingError(
                "No text could be extracted from DOCX file. The file may be empty or corrupted.",
                file_type="docx",
            )

        text = "\n\n".join(text_parts)
        properties = document.core_properties
        return ParsedDocument(
            text=text,
            metadata={
                "character_count": len(text),
                "word_count": len(re.findall(r"\b\w+\b", text)),
                "title": properties.title or None,
                "author": properties.author or None,
            },
        )


DEFAULT_PARSERS: Sequence[DocumentParser] = (PlainTextParser(), PdfParser(), DocxParser())


def _vector_metadata(
    metadata: Dict[str, Any],
    knowledge_base_id: str,
    document_id: str,
    document_name: str,
    chunk_index: int,
) -> Dict[str, Any]:
    return {
        **metadata,
        "document_id": document_id,
        "document_name": document_name,
        "chunk_index": chunk_index,
        "knowledge_base_id": knowledge_base_id,
    }


class DocumentProcessor:
    """Runs documents through the ingestion pipeline and manages their lifecycle."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        embedding_service: Optional[EmbeddingService] = None,
        chunker: Optional[ChunkingService] = None,
        registry: Optional[VectorStoreRegistry] = None,
        bm25_cache: Optional[BM25IndexCache] = None,
        background: Optional[BackgroundTaskRunner] = None,
        parsers: Optional[Sequence[DocumentParser]] = None,
    ):
        self._session_factory = session_factory
        self._embedding_service = embedding_service
        self._chunker = chunker or get_chunking_service()
        self._registry = registry or get_vector_store_registry()
        self._bm25_cache = bm25_cache or get_bm25_cache()
        self._background = background or get_background_runner()
        self._parsers: Dict[str, DocumentParser] = {}
        for parser in parsers or DEFAULT_PARSERS:
            for file_type in parser.file_types:
                self._parsers[file_type.lower()] = parser

    def parser_for(self, file_type: str) -> DocumentParser:
        parser = self._parsers.get(file_type.lower().strip("."))
        if parser is None:
            raise ParsingError(
                f"Unsupported file type: {file_type}. Allowed types: {', '.join(sorted(self._parsers))}",
                file_type=file_type,
            )
        return parser

    def _embedding_service_for(self, knowledge_base: KnowledgeBase) -> EmbeddingService:
        if self._embedding_service is not None:
            return self._embedding_service
        return get_embedding_service(knowledge_base.embedding_provider, knowledge_base.embedding_model)

    def _vector_store_for(self, knowledge_base: KnowledgeBase) -> VectorStore:
        dimension = get_embedding_dimension(knowledge_base.embedding_model)
        config = KnowledgeBaseRepository.vector_store_config(knowledge_base, dimension)
        return self._registry.resolve(knowledge_base.id, config, dimension)

    async def _get_knowledge_base(self, knowledge_base_id: str) -> KnowledgeBase:
        async with session_scope(self._session_factory) as session:
            knowledge_base = await KnowledgeBaseRepository(session).get_by_id(knowledge_base_id)
        if knowledge_base is None:
            raise NotFoundError("Knowledge base", knowledge_base_id)
        return knowledge_base

    async def register_document(
        self, knowledge_base_id: str, file_name: str, file_type: str, file_size: int = 0
    ) -> str:
        """Create a PENDING document record and return its id."""
        async with session_scope(self._session_factory) as session:
            if await KnowledgeBaseRepository(session).get_by_id(knowledge_base_id) is None:
                raise NotFoundError("Knowledge base", knowledge_base_id)
            document = await DocumentRepository(session).create(
                knowledge_base_id=knowledge_base_id,
                file_name=file_name,
                file_type=file_type.lower().strip("."),
                file_size=file_size,
                status=DocumentStatus.PENDING.value,
            )
            await KnowledgeBaseRepository(session).increment_document_count(knowledge_base_id, 1)
            return document.id

    async def _fail(
        self,
        document_id: str,
        stage: ProcessingStage,
        message: str,
        recoverable: bool,
    ) -> ProcessResult:
        logger.error(
            f"Document processing failed: document_id={document_id}, stage={stage.value}, "
            f"recoverable={recoverable}, error={message}"
        )
        try:
            async with session_scope(self._session_factory) as session:
                await DocumentRepository(session).update_status(
                    document_id,
                    DocumentStatus.FAILED,
                    error_message=f"[{stage.value}] {message}",
                    max_error_length=get_settings().processing.error_message_max_length,
                )
        except Exception as e:
            logger.error(
                f"Failed to update status to failed: document_id={document_id} - {e}", exc_info=True
            )
        return ProcessResult(
            success=False,
            document_id=document_id,
            chunk_count=0,
            error=message,
            error_details=ErrorDetails(stage=stage, message=message, recoverable=recoverable),
        )

    async def process_document(
        self, document: DocumentInput, options: Optional[ProcessOptions] = None
    ) -> ProcessResult:
        """
        Parse, chunk, embed and persist one document.

        Stage failures mark the document FAILED and come back as a result with
        `error_details`; chunk, embed and save failures are recoverable by
        reprocessing.

        Raises:
            NotFoundError: The document or its knowledge base does not exist
        """
        started = time.monotonic()
        document_id = document.document_id
        logger.info(
            f"Processing document: document_id={document_id}, file_name={document.file_name}, "
            f"type={document.file_type}"
        )

        async with session_scope(self._session_factory) as session:
            knowledge_base = await KnowledgeBaseRepository(session).get_by_id(document.knowledge_base_id)
            if knowledge_base is None:
                raise NotFoundError("Knowledge base", document.knowledge_base_id)
            updated = await DocumentRepository(session).update_status(document_id, DocumentStatus.PROCESSING)
            if updated is None:
                raise NotFoundError("Document", document_id)

        if options is None:
            options = ProcessOptions(
                chunk_size=knowledge_base.chunk_size, chunk_overlap=knowledge_base.chunk_overlap
            )

        # Parse
        try:
            parsed = await self.parser_for(document.file_type).parse(document.content, document.file_name)
        except Exception as e:
            message = e.message if isinstance(e, ParsingError) else str(e)
            return await self._fail(document_id, ProcessingStage.PARSE, message, recoverable=False)

        # Chunk
        try:
            chunks = self._chunker.chunk_document(
                parsed.text,
                chunk_size=options.chunk_size,
                chunk_overlap=options.chunk_overlap,
                document_id=document_id,
            )
        except Exception as e:
            return await self._fail(document_id, ProcessingStage.CHUNK, str(e), recoverable=True)
        if not chunks:
            return await self._fail(
                document_id, ProcessingStage.CHUNK, "Document produced no chunks", recoverable=False
            )
        logger.info(f"Document chunked: document_id={document_id}, chunks={len(chunks)}")

        # Embed
        try:
            embeddings = await self._embedding_service_for(knowledge_base).embed_batch(
                [chunk.content for chunk in chunks]
            )
        except Exception as e:
            return await self._fail(document_id, ProcessingStage.EMBED, str(e), recoverable=True)

        # Persist
        chunk_ids = [str(uuid.uuid4()) for _ in chunks]
        try:
            await self._persist(
                document, knowledge_base.id, chunks, chunk_ids, embeddings, parsed, options, started
            )
        except Exception as e:
            return await self._fail(document_id, ProcessingStage.SAVE, str(e), recoverable=True)

        await self._drop_keyword_index(knowledge_base.id)
        self._background.submit(
            self._sync_to_vector_store(knowledge_base, document, chunks, chunk_ids, embeddings),
            name=f"vector-sync:{document_id}",
        )

        logger.info(
            f"Document processed: document_id={document_id}, chunks={len(chunks)}, "
            f"elapsed_ms={int((time.monotonic() - started) * 1000)}"
        )
        return ProcessResult(success=True, document_id=document_id, chunk_count=len(chunks))

    async def _persist(
        self,
        document: DocumentInput,
        knowledge_base_id: str,
        chunks: Sequence[TextChunk],
        chunk_ids: Sequence[str],
        embeddings: Sequence[EmbeddingResult],
        parsed: ParsedDocument,
        options: ProcessOptions,
        started: float,
    ) -> None:
        rows = [
            {
                "id": chunk_id,
                "document_id": document.document_id,
                "content": chunk.content,
                "chunk_index": chunk.chunk_index,
                "start_offset": chunk.start_offset,
                "end_offset": chunk.end_offset,
                "embedding": json.dumps(embedding.embedding),
                "metadata_json": json.dumps(chunk.metadata, ensure_ascii=False) if chunk.metadata else None,
            }
            for chunk, chunk_id, embedding in zip(chunks, chunk_ids, embeddings)
        ]
        batch_size = get_settings().processing.persist_batch_size
        metadata = {
            **parsed.metadata,
            "chunk_size": options.chunk_size,
            "chunk_overlap": options.chunk_overlap,
            "processing_time": int((time.monotonic() - started) * 1000),
        }

        async with session_scope(self._session_factory) as session:
            chunk_repository = ChunkRepository(session)
            for start in range(0, len(rows), batch_size):
                await chunk_repository.create_many(rows[start : start + batch_size])
            await DocumentRepository(session).update(
                document.document_id,
                status=DocumentStatus.COMPLETED.value,
                chunk_count=len(rows),
                error_message=None,
                processed_at=datetime.now(timezone.utc),
                metadata_json=json.dumps(metadata, ensure_ascii=False),
            )
            await KnowledgeBaseRepository(session).increment_chunk_count(knowledge_base_id, len(rows))

    async def _drop_keyword_index(self, knowledge_base_id: str) -> None:
        try:
            await self._bm25_cache.delete(knowledge_base_id)
        except Exception as e:
            logger.warning(
                f"Failed to drop BM25 index: knowledge_base_id={knowledge_base_id}, error={e}"
            )

    async def _sync_to_vector_store(
        self,
        knowledge_base: KnowledgeBase,
        document: DocumentInput,
        chunks: Sequence[TextChunk],
        chunk_ids: Sequence[str],
        embeddings: Sequence[EmbeddingResult],
    ) -> None:
        store = self._vector_store_for(knowledge_base)
        documents = [
            VectorDocument(
                id=chunk_id,
                content=chunk.content,
                embedding=embedding.embedding,
                metadata=_vector_metadata(
                    chunk.metadata,
                    knowledge_base.id,
                    document.document_id,
                    document.file_name,
                    chunk.chunk_index,
                ),
            )
            for chunk, chunk_id, embedding in zip(chunks, chunk_ids, embeddings)
        ]
        results = await store.upsert(knowledge_base.id, documents)
        synced = sum(1 for r in results if r.success)
        if synced < len(results):
            logger.warning(
                f"Vector sync incomplete: document_id={document.document_id}, backend={store.backend}, "
                f"synced={synced}/{len(results)}"
            )
        else:
            logger.info(
                f"Vector sync complete: document_id={document.document_id}, backend={store.backend}, "
                f"synced={synced}"
            )

    async def process_batch(
        self,
        documents: Sequence[DocumentInput],
        options: Optional[ProcessOptions] = None,
        concurrency: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[ProcessResult]:
        """
        Process documents with at most `concurrency` in flight.

        `on_progress` is called before and after each document. Results are
        returned in input order; one document failing never stops the others.
        """
        semaphore = asyncio.Semaphore(max(1, concurrency or get_settings().processing.concurrency))
        total = len(documents)
        results: List[Optional[ProcessResult]] = [None] * total
        completed = 0

        def notify(progress: BatchProgress) -> None:
            if on_progress is None:
                return
            try:
                on_progress(progress)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

        async def run(index: int, document: DocumentInput) -> None:
            nonlocal completed
            async with semaphore:
                notify(BatchProgress(completed=completed, total=total, current=document.file_name))
                try:
                    result = await self.process_document(document, options)
                except Exception as e:
                    logger.error(
                        f"Document processing aborted: document_id={document.document_id} - {e}",
                        exc_info=True,
                    )
                    result = ProcessResult(
                        success=False, document_id=document.document_id, error=str(e)
                    )
                results[index] = result
                completed += 1
                notify(
                    BatchProgress(
                        completed=completed, total=total, current=document.file_name, result=result
                    )
                )

        await asyncio.gather(*(run(i, doc) for i, doc in enumerate(documents)))
        logger.info(
            f"Batch processed: total={total}, succeeded={sum(1 for r in results if r and r.success)}"
        )
        return [r for r in results if r is not None]

    async def reprocess_document(
        self,
        document_id: str,
        content: bytes,
        options: Optional[ProcessOptions] = None,
    ) -> ProcessResult:
        """
        Drop a document's chunks and run it through the pipeline again.

        Raises:
            NotFoundError: Unknown document
        """
        async with session_scope(self._session_factory) as session:
            record = await DocumentRepository(session).get_by_id(document_id)
            if record is None:
                raise NotFoundError("Document", document_id)
            chunk_repository = ChunkRepository(session)
            chunk_ids = await chunk_repository.get_ids_for_document(document_id)
            deleted = await chunk_repository.delete_by_document(document_id)
            if deleted:
                await KnowledgeBaseRepository(session).increment_chunk_count(
                    record.knowledge_base_id, -deleted
                )
            await DocumentRepository(session).update(document_id, chunk_count=0)
            document = DocumentInput(
                document_id=record.id,
                knowledge_base_id=record.knowledge_base_id,
                file_name=record.file_name,
                file_type=record.file_type,
                content=content,
            )

        logger.info(f"Reprocessing document: document_id={document_id}, removed_chunks={deleted}")
        if chunk_ids:
            await self.delete_from_vector_store(document.knowledge_base_id, chunk_ids)
            await self._drop_keyword_index(document.knowledge_base_id)
        return await self.process_document(document, options)

    async def get_document_progress(self, knowledge_base_id: str) -> DocumentProgress:
        async with session_scope(self._session_factory) as session:
            counts = await DocumentRepository(session).count_by_status(knowledge_base_id)
        return DocumentProgress(
            total=sum(counts.values()),
            pending=counts.get(DocumentStatus.PENDING.value, 0),
            processing=counts.get(DocumentStatus.PROCESSING.value, 0),
            completed=counts.get(DocumentStatus.COMPLETED.value, 0),
            failed=counts.get(DocumentStatus.FAILED.value, 0),
        )

    async def get_progress_for_document(self, document_id: str) -> DocumentProgress:
        async with session_scope(self._session_factory) as session:
            record = await DocumentRepository(session).get_by_id(document_id)
        if record is None:
            raise NotFoundError("Document", document_id)
        return await self.get_document_progress(record.knowledge_base_id)

    async def cleanup_failed_documents(self, knowledge_base_id: str) -> int:
        """Delete FAILED documents and return how many were removed."""
        async with session_scope(self._session_factory) as session:
            removed = await DocumentRepository(session).delete_by_status(
                knowledge_base_id, DocumentStatus.FAILED
            )
            if removed:
                await KnowledgeBaseRepository(session).increment_document_count(knowledge_base_id, -removed)
        logger.info(f"Removed failed documents: knowledge_base_id={knowledge_base_id}, count={removed}")
        return removed

    async def delete_from_vector_store(self, knowledge_base_id: str, chunk_ids: Sequence[str]) -> int:
        """Best-effort delete; returns 0 when the store cannot be reached."""
        try:
            store = self._vector_store_for(await self._get_knowledge_base(knowledge_base_id))
            return await store.delete(knowledge_base_id, chunk_ids)
        except Exception as e:
            logger.error(
                f"Vector store delete failed: knowledge_base_id={knowledge_base_id}, "
                f"ids={len(chunk_ids)}, error={e}"
            )
            return 0

    async def resync_knowledge_base(self, knowledge_base_id: str) -> ResyncResult:
        """Clear the knowledge base's vector collection and re-upsert every persisted chunk."""
        knowledge_base = await self._get_knowledge_base(knowledge_base_id)
        store = self._vector_store_for(knowledge_base)
        logger.info(f"Resyncing vector store: knowledge_base_id={knowledge_base_id}, backend={store.backend}")

        await store.delete_all(knowledge_base_id)
        async with session_scope(self._session_factory) as session:
            rows = await ChunkRepository(session).get_completed_for_knowledge_base(knowledge_base_id)

        documents: List[VectorDocument] = []
        result = ResyncResult()
        for chunk, file_name in rows:
            embedding = parse_embedding(chunk.embedding)
            if embedding is None:
                result.failed += 1
                result.failed_ids.append(chunk.id)
                continue
            documents.append(
                VectorDocument(
                    id=chunk.id,
                    content=chunk.content,
                    embedding=embedding,
                    metadata=_vector_metadata(
                        parse_metadata(chunk.metadata_json),
                        knowledge_base_id,
                        chunk.document_id,
                        file_name,
                        chunk.chunk_index,
                    ),
                )
            )

        for batch in store.batches(documents, get_settings().vector_store.upsert_batch_size):
            for upserted in await store.upsert(knowledge_base_id, batch):
                if upserted.success:
                    result.synced += 1
                else:
                    result.failed += 1
                    result.failed_ids.append(upserted.id)

        if result.synced:
            try:
                await store.optimize_index()
            except VectorStoreError as e:
                logger.warning(
                    f"Index optimize after resync failed: knowledge_base_id={knowledge_base_id}, "
                    f"error={e.message}"
                )

        logger.info(
            f"Resync complete: knowledge_base_id={knowledge_base_id}, synced={result.synced}, "
            f"failed={result.failed}"
        )
        return result


_processor: Optional[DocumentProcessor] = None


def get_document_processor() -> DocumentProcessor:
    global _processor
    if _processor is None:
        _processor = DocumentProcessor()
    return _processor

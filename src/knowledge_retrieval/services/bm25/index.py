"""In-process BM25 inverted index."""

import math
import re
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from knowledge_retrieval.config import get_settings
from knowledge_retrieval.services.bm25.segmenter import SegmentMode, segment
from knowledge_retrieval.utils.errors import BM25Error
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("bm25.index")

EXPORT_VERSION = 1


class BM25Config(BaseModel):
    """Scoring and tokenization parameters."""

    k1: float = Field(default=1.5, ge=0.0)
    b: float = Field(default=0.75, ge=0.0, le=1.0)
    delta: float = Field(default=0.0, ge=0.0)
    mode: SegmentMode = "search"
    remove_stop_words: bool = True
    use_jieba: Optional[bool] = None

    @classmethod
    def from_settings(cls) -> "BM25Config":
        config = get_settings().bm25
        return cls(k1=config.k1, b=config.b, delta=config.delta, use_jieba=config.use_jieba)


class BM25Document(BaseModel):
    id: str
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BM25Hit(BaseModel):
    id: str
    score: float
    matched_terms: List[str] = Field(default_factory=list)


class BM25Stats(BaseModel):
    document_count: int = 0
    term_count: int = 0
    avg_doc_length: float = 0.0


class BM25Index:
    """
    Inverted index `term -> {doc_id: positions}` with BM25 scoring.

    Term frequency is the number of positions recorded for a document.
    `document_count` and `avg_doc_length` are recomputed whenever a
    document is added or removed so they always match the postings.
    """

    def __init__(self, config: Optional[BM25Config] = None):
        self.config = config or BM25Config.from_settings()
        self._postings: Dict[str, Dict[str, List[int]]] = {}
        self._doc_lengths: Dict[str, int] = {}
        self._documents: Dict[str, BM25Document] = {}
        self.document_count = 0
        self.avg_doc_length = 0.0

    def _tokenize(self, text: str) -> List[str]:
        return segment(
            text,
            mode=self.config.mode,
            remove_stop_words=self.config.remove_stop_words,
            use_jieba=self.config.use_jieba,
        )

    def _refresh_stats(self) -> None:
        self.document_count = len(self._doc_lengths)
        total = sum(self._doc_lengths.values())
        self.avg_doc_length = total / self.document_count if self.document_count else 0.0

    def _index(self, document: BM25Document) -> None:
        if document.id in self._documents:
            self._unindex(document.id)
        terms = self._tokenize(document.content)
        self._documents[document.id] = document
        self._doc_lengths[document.id] = len(terms)
        for position, term in enumerate(terms):
            self._postings.setdefault(term, {}).setdefault(document.id, []).append(position)

    def _unindex(self, doc_id: str) -> bool:
        if doc_id not in self._documents:
            return False
        for term in list(self._postings):
            postings = self._postings[term]
            if postings.pop(doc_id, None) is not None and not postings:
                del self._postings[term]
        del self._documents[doc_id]
        del self._doc_lengths[doc_id]
        return True

    def add_document(self, id: str, content: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Index one document, replacing any previous version with the same id."""
        self._index(BM25Document(id=id, content=content, metadata=metadata or {}))
        self._refresh_stats()

    def add_documents(self, documents: Iterable[BM25Document]) -> int:
        count = 0
        for document in documents:
            self._index(document)
            count += 1
        self._refresh_stats()
        return count

    def remove_document(self, doc_id: str) -> bool:
        removed = self._unindex(doc_id)
        if removed:
            self._refresh_stats()
        return removed

    def idf(self, document_frequency: int) -> float:
        n = self.document_count
        return math.log(1 + (n - document_frequency + 0.5) / (document_frequency + 0.5))

    def term_score(self, term_frequency: int, doc_length: int, idf: float) -> float:
        k1, b, delta = self.config.k1, self.config.b, self.config.delta
        avg = self.avg_doc_length or 1.0
        norm = term_frequency + k1 * (1 - b + b * doc_length / avg) + delta
        return idf * (term_frequency * (k1 + 1)) / norm

    def search(self, query: str, top_k: int = 10) -> List[BM25Hit]:
        """Rank documents by summed BM25 contribution of the query terms they contain."""
        if top_k <= 0:
            return []
        terms = list(dict.fromkeys(self._tokenize(query)))
        if not terms or not self.document_count:
            return []

        scores: Dict[str, float] = {}
        matched: Dict[str, List[str]] = {}
        for term in terms:
            postings = self._postings.get(term)
            if not postings:
                continue
            idf = self.idf(len(postings))
            for doc_id, positions in postings.items():
                scores[doc_id] = scores.get(doc_id, 0.0) + self.term_score(
                    len(positions), self._doc_lengths[doc_id], idf
                )
                matched.setdefault(doc_id, []).append(term)

        ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)[:top_k]
        return [BM25Hit(id=doc_id, score=score, matched_terms=matched[doc_id]) for doc_id, score in ranked]

    def get_document(self, doc_id: str) -> Optional[BM25Document]:
        return self._documents.get(doc_id)

    def get_stats(self) -> BM25Stats:
        return BM25Stats(
            document_count=self.document_count,
            term_count=len(self._postings),
            avg_doc_length=self.avg_doc_length,
        )

    def clear(self) -> None:
        self._postings.clear()
        self._doc_lengths.clear()
        self._documents.clear()
        self._refresh_stats()

    def export_data(self) -> Dict[str, Any]:
        """JSON-serializable snapshot of postings, lengths, documents and config."""
        return {
            "version": EXPORT_VERSION,
            "postings": {term: dict(postings) for term, postings in self._postings.items()},
            "doc_lengths": dict(self._doc_lengths),
            "documents": {doc_id: doc.model_dump() for doc_id, doc in self._documents.items()},
            "config": self.config.model_dump(),
        }

    def import_data(self, data: Dict[str, Any]) -> None:
        """Replace the index contents with an `export_data()` snapshot."""
        try:
            postings = {
                str(term): {str(doc_id): [int(p) for p in positions] for doc_id, positions in docs.items()}
                for term, docs in data.get("postings", {}).items()
            }
            doc_lengths = {str(k): int(v) for k, v in data.get("doc_lengths", {}).items()}
            documents = {
                str(doc_id): BM25Document(**doc) for doc_id, doc in data.get("documents", {}).items()
            }
            config = BM25Config(**data["config"]) if data.get("config") else self.config
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise BM25Error("Invalid BM25 index snapshot", details={"error": str(e)}) from e

        self.config = config
        self._postings = postings
        self._doc_lengths = doc_lengths
        self._documents = documents
        self._refresh_stats()


def highlight_matches(text: str, terms: Iterable[str]) -> str:
    """Wrap case-insensitive occurrences of the terms in `**`."""
    unique = sorted({t for t in terms if t and t.strip()}, key=len, reverse=True)
    if not unique:
        return text
    pattern = re.compile("|".join(re.escape(t) for t in unique), re.IGNORECASE)
    return pattern.sub(lambda m: f"**{m.group(0)}**", text)

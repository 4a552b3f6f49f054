"""Database connection and session management."""

from knowledge_retrieval.database.connection import (
    check_connection,
    close_engine,
    create_engine,
    get_engine,
)
from knowledge_retrieval.database.models import (
    Base,
    BM25IndexRecord,
    DocumentChunk,
    KnowledgeBase,
    KnowledgeDocument,
    UsageRecord,
)
from knowledge_retrieval.database.session import (
    close_db,
    get_session,
    get_session_factory,
    init_db,
    session_scope,
)

__all__ = [
    # Models
    "Base",
    "KnowledgeBase",
    "KnowledgeDocument",
    "DocumentChunk",
    "BM25IndexRecord",
    "UsageRecord",
    # Connection
    "get_engine",
    "create_engine",
    "close_engine",
    "check_connection",
    # Session
    "get_session",
    "get_session_factory",
    "session_scope",
    "init_db",
    "close_db",
]

"""Provider usage accounting."""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_retrieval.database.models import UsageRecord
from knowledge_retrieval.database.session import session_scope
from knowledge_retrieval.models.embedding import EmbeddingUsage
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("usage_service")


class UsageSink(ABC):
    """Destination for usage events."""

    @abstractmethod
    async def record(
        self,
        feature: str,
        provider: str,
        model: str,
        quantity: int,
        unit: str = "tokens",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...

    async def record_embedding(self, usage: EmbeddingUsage) -> None:
        await self.record(
            feature="embedding_tokens",
            provider=usage.provider,
            model=usage.model,
            quantity=usage.total_tokens,
            unit="tokens",
            metadata={"request_count": usage.request_count},
        )


class DatabaseUsageSink(UsageSink):
    """Writes one `UsageRecord` row per event in its own transaction."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    async def record(
        self,
        feature: str,
        provider: str,
        model: str,
        quantity: int,
        unit: str = "tokens",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        async with session_scope(self._session_factory) as session:
            session.add(
                UsageRecord(
                    feature=feature,
                    provider=provider,
                    model=model,
                    quantity=quantity,
                    unit=unit,
                    metadata_json=json.dumps(metadata) if metadata else None,
                )
            )
        logger.debug(f"Usage recorded: feature={feature}, model={model}, quantity={quantity}")


class InMemoryUsageSink(UsageSink):
    """Keeps events in a list. Used when no database is wired (tests, scripts)."""

    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    async def record(
        self,
        feature: str,
        provider: str,
        model: str,
        quantity: int,
        unit: str = "tokens",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.events.append(
            {
                "feature": feature,
                "provider": provider,
                "model": model,
                "quantity": quantity,
                "unit": unit,
                "metadata": metadata or {},
            }
        )

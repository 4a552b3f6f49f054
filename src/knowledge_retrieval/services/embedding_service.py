"""Embedding generation service (provider-agnostic)."""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from knowledge_retrieval.config import get_settings
from knowledge_retrieval.models.embedding import EmbeddingResult, EmbeddingUsage
from knowledge_retrieval.services.embedding_providers import (
    EmbeddingProvider,
    create_embedding_provider,
    get_embedding_dimension,
)
from knowledge_retrieval.services.usage_service import UsageSink
from knowledge_retrieval.utils.background import BackgroundTaskRunner, get_background_runner
from knowledge_retrieval.utils.errors import DimensionMismatchError, TransientEmbeddingError
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("embedding_service")


class EmbeddingService:
    """
    Generate embeddings through a configured provider.

    - Each text is retried on transient failures (timeouts, network faults,
      429/5xx) with exponential backoff and jitter; other failures propagate
      on the first attempt.
    - Batches are sent in groups of `batch_size` texts: requests within a
      group run concurrently, groups run one after another.
    - Token usage for a batch is handed to the usage sink in the background
      once the batch completes.
    """

    def __init__(
        self,
        provider: Optional[EmbeddingProvider] = None,
        usage_sink: Optional[UsageSink] = None,
        background: Optional[BackgroundTaskRunner] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        retry_max_delay: Optional[float] = None,
        retry_jitter: Optional[float] = None,
        batch_size: Optional[int] = None,
        expected_dimension: Optional[int] = None,
    ):
        config = get_settings().embedding
        self._provider = provider
        self._usage_sink = usage_sink
        self._background = background or get_background_runner()
        self.max_retries = config.embedding_max_retries if max_retries is None else max_retries
        self._base_delay = config.embedding_retry_base_delay if retry_base_delay is None else retry_base_delay
        self._max_delay = config.embedding_retry_max_delay if retry_max_delay is None else retry_max_delay
        self._jitter = config.embedding_retry_jitter if retry_jitter is None else retry_jitter
        self.batch_size = max(1, batch_size or config.embedding_batch_size)
        self._expected_dimension = (
            expected_dimension if expected_dimension is not None else config.embedding_dimension
        )

    @property
    def provider(self) -> EmbeddingProvider:
        if self._provider is None:
            self._provider = create_embedding_provider(get_settings().embedding)
        return self._provider

    @property
    def model(self) -> str:
        return self.provider.model

    @property
    def dimension(self) -> int:
        """Dimension implied by the model name."""
        return self._expected_dimension or get_embedding_dimension(self.model)

    async def embed(self, text: str) -> EmbeddingResult:
        """
        Embed a single text with retries.

        Raises:
            TransientEmbeddingError: When every attempt failed transiently
            EmbeddingError: On the first non-retryable failure
            DimensionMismatchError: When the vector size differs from the expected dimension
        """
        provider = self.provider
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential_jitter(
                initial=self._base_delay, max=self._max_delay, jitter=self._jitter
            ),
            retry=retry_if_exception_type(TransientEmbeddingError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                result = await provider.embed(text)

        if self._expected_dimension and len(result.embedding) != self._expected_dimension:
            raise DimensionMismatchError(self._expected_dimension, len(result.embedding))
        return result

    async def embed_batch(self, texts: Sequence[str]) -> List[EmbeddingResult]:
        """Embed texts in order. Any failure aborts the batch."""
        if not texts:
            return []

        provider = self.provider
        logger.info(
            f"Generating embeddings: provider={provider.name}, model={provider.model}, "
            f"texts={len(texts)}, batch_size={self.batch_size}"
        )

        results: List[EmbeddingResult] = []
        for start in range(0, len(texts), self.batch_size):
            group = texts[start : start + self.batch_size]
            results.extend(await asyncio.gather(*(self.embed(text) for text in group)))

        usage = EmbeddingUsage(
            provider=provider.name,
            model=provider.model,
            total_tokens=sum(r.tokens for r in results),
            request_count=len(results),
        )
        self._report_usage(usage)

        logger.info(
            f"Embeddings generated: count={len(results)}, "
            f"dimension={len(results[0].embedding)}, tokens={usage.total_tokens}"
        )
        return results

    def _report_usage(self, usage: EmbeddingUsage) -> None:
        if self._usage_sink is None or usage.total_tokens <= 0:
            return
        self._background.submit(
            self._usage_sink.record_embedding(usage),
            name=f"usage:embedding:{usage.model}",
        )

    async def close(self) -> None:
        if self._provider is not None:
            await self._provider.close()


_services: Dict[Tuple[str, str], EmbeddingService] = {}


def get_embedding_service(
    provider: Optional[str] = None,
    model: Optional[str] = None,
    usage_sink: Optional[UsageSink] = None,
) -> EmbeddingService:
    """
    Get the shared service for a provider/model pair.

    Knowledge bases record their own provider and model; both default to
    the configured embedding settings.
    """
    config = get_settings().embedding
    key = (
        (provider or config.embedding_provider.value).lower(),
        model or config.embedding_model,
    )
    service = _services.get(key)
    if service is None:
        service = EmbeddingService(
            provider=create_embedding_provider(config, provider=key[0], model=key[1]),
            usage_sink=usage_sink,
        )
        _services[key] = service
    return service


async def close_embedding_services() -> None:
    for service in _services.values():
        await service.close()
    _services.clear()

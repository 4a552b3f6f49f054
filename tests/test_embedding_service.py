"""Tests for embedding providers and the embedding service."""

import httpx
import pytest
from sqlalchemy import select

from knowledge_retrieval.database.models import UsageRecord
from knowledge_retrieval.services.embedding_providers import (
    CompatibleEmbeddingProvider,
    get_embedding_dimension,
    is_transient_error,
)
from knowledge_retrieval.services.embedding_service import EmbeddingService
from knowledge_retrieval.services.usage_service import DatabaseUsageSink, InMemoryUsageSink
from knowledge_retrieval.utils.background import BackgroundTaskRunner
from knowledge_retrieval.utils.errors import (
    DimensionMismatchError,
    EmbeddingError,
    TransientEmbeddingError,
)


@pytest.fixture
def make_service(embedding_dimension):
    """Build a service with zero retry delays."""

    def _make(provider, **kwargs):
        defaults = dict(
            max_retries=2,
            retry_base_delay=0,
            retry_max_delay=0,
            retry_jitter=0,
            batch_size=10,
            expected_dimension=embedding_dimension,
        )
        defaults.update(kwargs)
        return EmbeddingService(provider=provider, **defaults)

    return _make


class TestErrorClassification:
    """Tests for is_transient_error."""

    @pytest.mark.parametrize(
        "message",
        ["Rate limit exceeded", "request timed out", "ECONNRESET", "Too Many Requests"],
    )
    def test_transient_messages(self, message):
        assert is_transient_error(Exception(message)) is True

    def test_permanent_message(self):
        assert is_transient_error(Exception("invalid api key")) is False

    def test_http_status_codes(self):
        request = httpx.Request("POST", "https://example.com/embeddings")
        throttled = httpx.HTTPStatusError(
            "throttled", request=request, response=httpx.Response(429, request=request)
        )
        unauthorized = httpx.HTTPStatusError(
            "unauthorized", request=request, response=httpx.Response(401, request=request)
        )

        assert is_transient_error(throttled) is True
        assert is_transient_error(unauthorized) is False

    def test_dimension_lookup(self):
        assert get_embedding_dimension("text-embedding-3-large") == 3072
        assert get_embedding_dimension("gateway/BAAI/bge-m3") == 1024
        assert get_embedding_dimension("unknown-model") == 1536


class TestEmbed:
    """Tests for EmbeddingService.embed."""

    @pytest.mark.asyncio
    async def test_embed_success(self, make_service, embedding_provider, embedding_dimension):
        service = make_service(embedding_provider)

        result = await service.embed("hello world")

        assert len(result.embedding) == embedding_dimension
        assert result.tokens == 2
        assert result.model == "test-embedding"

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, make_service, embedding_provider):
        embedding_provider.failures = [Exception("rate limit exceeded")]
        service = make_service(embedding_provider)

        result = await service.embed("hello")

        assert embedding_provider.calls == 2
        assert result.embedding

    @pytest.mark.asyncio
    async def test_attempts_bounded_by_max_retries(self, make_service, embedding_provider):
        embedding_provider.failures = [Exception("rate limit exceeded")] * 10
        service = make_service(embedding_provider, max_retries=2)

        with pytest.raises(TransientEmbeddingError):
            await service.embed("hello")

        assert embedding_provider.calls == 3

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, make_service, embedding_provider):
        embedding_provider.failures = [Exception("invalid api key")]
        service = make_service(embedding_provider)

        with pytest.raises(EmbeddingError) as exc_info:
            await service.embed("hello")

        assert not isinstance(exc_info.value, TransientEmbeddingError)
        assert embedding_provider.calls == 1

    @pytest.mark.asyncio
    async def test_dimension_mismatch(self, make_service, embedding_provider):
        service = make_service(embedding_provider, expected_dimension=8)

        with pytest.raises(DimensionMismatchError):
            await service.embed("hello")


class TestEmbedBatch:
    """Tests for EmbeddingService.embed_batch."""

    @pytest.mark.asyncio
    async def test_preserves_order(self, make_service, embedding_provider):
        service = make_service(embedding_provider, batch_size=3)
        texts = [f"text number {i}" for i in range(7)]

        results = await service.embed_batch(texts)
        singles = [await service.embed(t) for t in texts]

        assert [r.embedding for r in results] == [s.embedding for s in singles]

    @pytest.mark.asyncio
    async def test_empty_input(self, make_service, embedding_provider):
        assert await make_service(embedding_provider).embed_batch([]) == []
        assert embedding_provider.calls == 0

    @pytest.mark.asyncio
    async def test_failure_aborts_batch(self, make_service, embedding_provider):
        embedding_provider.failures = [Exception("invalid request")]
        service = make_service(embedding_provider)

        with pytest.raises(EmbeddingError):
            await service.embed_batch(["a", "b", "c"])

    @pytest.mark.asyncio
    async def test_usage_reported_in_background(self, make_service, embedding_provider):
        sink = InMemoryUsageSink()
        background = BackgroundTaskRunner()
        service = make_service(embedding_provider, usage_sink=sink, background=background)

        await service.embed_batch(["one two", "three"])
        await background.drain(timeout=1)

        assert len(sink.events) == 1
        event = sink.events[0]
        assert event["feature"] == "embedding_tokens"
        assert event["quantity"] == 3
        assert event["metadata"] == {"request_count": 2}

    @pytest.mark.asyncio
    async def test_usage_persisted_by_database_sink(self, make_service, embedding_provider, session_factory):
        background = BackgroundTaskRunner()
        service = make_service(
            embedding_provider, usage_sink=DatabaseUsageSink(session_factory), background=background
        )

        await service.embed_batch(["one two", "three"])
        await background.drain(timeout=1)

        async with session_factory() as session:
            records = list((await session.execute(select(UsageRecord))).scalars().all())

        assert len(records) == 1
        assert records[0].feature == "embedding_tokens"
        assert records[0].quantity == 3
        assert records[0].unit == "tokens"


class TestCompatibleProvider:
    """Tests for the OpenAI-compatible HTTP provider."""

    @pytest.mark.asyncio
    async def test_request_and_prefix(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = request.read().decode()
            return httpx.Response(
                200,
                json={"data": [{"embedding": [0.1, 0.2, 0.3]}], "usage": {"total_tokens": 4}},
            )

        provider = CompatibleEmbeddingProvider(
            base_url="https://gateway.example.com/v1",
            api_key="key",
            model="bge-m3",
            model_prefix="BAAI/",
            transport=httpx.MockTransport(handler),
        )

        result = await provider.embed("hello")
        await provider.close()

        assert seen["path"] == "/v1/embeddings"
        assert '"BAAI/bge-m3"' in seen["body"]
        assert result.embedding == [0.1, 0.2, 0.3]
        assert result.tokens == 4

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        provider = CompatibleEmbeddingProvider(
            base_url="https://gateway.example.com/v1",
            api_key="key",
            model="bge-m3",
            transport=httpx.MockTransport(lambda request: httpx.Response(503)),
        )

        with pytest.raises(TransientEmbeddingError):
            await provider.embed("hello")
        await provider.close()

    @pytest.mark.asyncio
    async def test_empty_data_is_an_error(self):
        provider = CompatibleEmbeddingProvider(
            base_url="https://gateway.example.com/v1",
            api_key="key",
            model="bge-m3",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"data": []})),
        )

        with pytest.raises(EmbeddingError):
            await provider.embed("hello")
        await provider.close()

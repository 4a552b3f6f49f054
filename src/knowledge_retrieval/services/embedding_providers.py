"""Embedding providers behind one small interface."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import httpx
import openai
from openai import AsyncAzureOpenAI, AsyncOpenAI

from knowledge_retrieval.config import EmbeddingProviderType, EmbeddingSettings
from knowledge_retrieval.models.embedding import EmbeddingResult
from knowledge_retrieval.utils.errors import (
    ConfigurationError,
    EmbeddingError,
    TransientEmbeddingError,
)
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("embedding_providers")

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
_TRANSIENT_PATTERNS = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "enotfound",
    "connection reset",
    "temporarily unavailable",
)

# Output dimension per model; unknown models fall back to DEFAULT_EMBEDDING_DIMENSION
EMBEDDING_DIMENSIONS: Dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
    "BAAI/bge-m3": 1024,
    "BAAI/bge-large-zh-v1.5": 1024,
    "BAAI/bge-large-en-v1.5": 1024,
    "netease-youdao/bce-embedding-base_v1": 768,
    "embedding-2": 1024,
    "embedding-3": 2048,
    "text-embedding-v2": 1536,
    "text-embedding-v3": 1024,
    "nomic-embed-text": 768,
    "mxbai-embed-large": 1024,
}
DEFAULT_EMBEDDING_DIMENSION = 1536


def get_embedding_dimension(model: str) -> int:
    """Look up a model's dimension, ignoring any `namespace/` gateway prefix."""
    if model in EMBEDDING_DIMENSIONS:
        return EMBEDDING_DIMENSIONS[model]
    if "/" in model:
        tail = model.split("/", 1)[1]
        if tail in EMBEDDING_DIMENSIONS:
            return EMBEDDING_DIMENSIONS[tail]
    return DEFAULT_EMBEDDING_DIMENSION


def is_transient_error(error: BaseException) -> bool:
    """Classify a provider failure as retryable."""
    if isinstance(error, TransientEmbeddingError):
        return True
    if isinstance(error, (openai.APITimeoutError, openai.APIConnectionError)):
        return True
    if isinstance(error, openai.APIStatusError):
        return error.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    message = str(error).lower()
    return any(pattern in message for pattern in _TRANSIENT_PATTERNS)


def apply_model_prefix(model: str, prefix: Optional[str]) -> str:
    if not prefix or model.startswith(prefix):
        return model
    return f"{prefix}{model}"


class EmbeddingProvider(ABC):
    """One provider, one request/response shape."""

    name: str = ""

    def __init__(self, model: str, model_prefix: Optional[str] = None):
        self.model = apply_model_prefix(model, model_prefix)

    @abstractmethod
    async def _request(self, text: str) -> Tuple[list, int]:
        """Return `(vector, total_tokens)` or raise the client's native error."""

    async def embed(self, text: str) -> EmbeddingResult:
        """Embed one text, mapping failures onto the embedding error taxonomy."""
        try:
            vector, tokens = await self._request(text)
        except EmbeddingError:
            raise
        except Exception as e:
            error_cls = TransientEmbeddingError if is_transient_error(e) else EmbeddingError
            raise error_cls(
                f"Embedding request failed: {e}",
                model=self.model,
                details={"provider": self.name, "error_type": type(e).__name__},
            ) from e

        if not vector:
            raise EmbeddingError("Embedding response contained no vector", model=self.model)
        return EmbeddingResult(embedding=vector, tokens=tokens, model=self.model)

    async def close(self) -> None:
        return None


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embeddings API via the official SDK."""

    name = EmbeddingProviderType.OPENAI.value

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        model_prefix: Optional[str] = None,
    ):
        super().__init__(model, model_prefix)
        # Retries are owned by EmbeddingService
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)

    async def _request(self, text: str) -> Tuple[list, int]:
        response = await self._client.embeddings.create(model=self.model, input=text)
        tokens = response.usage.total_tokens if response.usage else 0
        return list(response.data[0].embedding), tokens

    async def close(self) -> None:
        await self._client.close()


class AzureEmbeddingProvider(OpenAIEmbeddingProvider):
    """Azure OpenAI deployment."""

    name = EmbeddingProviderType.AZURE.value

    def __init__(
        self,
        api_key: str,
        endpoint: str,
        deployment: str,
        api_version: str,
        timeout: float = 30.0,
    ):
        EmbeddingProvider.__init__(self, deployment)
        self._client = AsyncAzureOpenAI(
            api_key=api_key,
            azure_endpoint=endpoint,
            api_version=api_version,
            timeout=timeout,
            max_retries=0,
        )


class CompatibleEmbeddingProvider(EmbeddingProvider):
    """Any gateway exposing an OpenAI-compatible `POST /embeddings`."""

    name = EmbeddingProviderType.COMPATIBLE.value

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        timeout: float = 30.0,
        model_prefix: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(model, model_prefix)
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def _request(self, text: str) -> Tuple[list, int]:
        response = await self._client.post("/embeddings", json={"model": self.model, "input": text})
        response.raise_for_status()
        payload: Dict[str, Any] = response.json()
        data = payload.get("data") or []
        if not data:
            raise EmbeddingError("Embedding response contained no data", model=self.model)
        tokens = (payload.get("usage") or {}).get("total_tokens", 0)
        return [float(v) for v in data[0].get("embedding", [])], int(tokens or 0)

    async def close(self) -> None:
        await self._client.aclose()


def create_embedding_provider(
    settings: EmbeddingSettings,
    provider: Optional[str] = None,
    model: Optional[str] = None,
) -> EmbeddingProvider:
    """
    Build the provider selected by configuration.

    Args:
        settings: Embedding settings holding credentials
        provider: Override of the configured provider (e.g. a knowledge base's own)
        model: Override of the configured model

    Raises:
        ConfigurationError: Unknown provider or missing credentials
    """
    try:
        provider_type = EmbeddingProviderType((provider or settings.embedding_provider.value).lower())
    except ValueError as e:
        raise ConfigurationError(
            f"Unsupported embedding provider: {provider}",
            details={"valid": [p.value for p in EmbeddingProviderType]},
        ) from e

    if provider_type == EmbeddingProviderType.OPENAI:
        if not settings.openai_api_key:
            raise ConfigurationError("OPENAI_API_KEY is required when EMBEDDING_PROVIDER=openai")
        return OpenAIEmbeddingProvider(
            api_key=settings.openai_api_key,
            model=model or settings.embedding_model,
            base_url=settings.openai_base_url,
            timeout=settings.embedding_timeout,
            model_prefix=settings.embedding_model_prefix,
        )

    if provider_type == EmbeddingProviderType.AZURE:
        if not (
            settings.azure_openai_endpoint
            and settings.azure_openai_api_key
            and settings.embedding_deployment_name
        ):
            raise ConfigurationError(
                "Azure embeddings require AZURE_OPENAI_ENDPOINT, AZURE_OPENAI_API_KEY, "
                "and EMBEDDING_DEPLOYMENT_NAME"
            )
        return AzureEmbeddingProvider(
            api_key=settings.azure_openai_api_key,
            endpoint=settings.azure_openai_endpoint,
            deployment=settings.embedding_deployment_name,
            api_version=settings.azure_openai_api_version,
            timeout=settings.embedding_timeout,
        )

    if not (settings.compatible_base_url and settings.compatible_api_key):
        raise ConfigurationError(
            "COMPATIBLE_BASE_URL and COMPATIBLE_API_KEY are required when EMBEDDING_PROVIDER=compatible"
        )
    return CompatibleEmbeddingProvider(
        base_url=settings.compatible_base_url,
        api_key=settings.compatible_api_key,
        model=model or settings.embedding_model,
        timeout=settings.embedding_timeout,
        model_prefix=settings.embedding_model_prefix,
    )

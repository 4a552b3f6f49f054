"""Client for an external cross-encoder rerank endpoint."""

from typing import List, Optional, Sequence, Tuple

import httpx

from knowledge_retrieval.config import RerankSettings, get_settings
from knowledge_retrieval.models.search import SearchResult
from knowledge_retrieval.services.usage_service import UsageSink
from knowledge_retrieval.utils.background import BackgroundTaskRunner, get_background_runner
from knowledge_retrieval.utils.errors import RerankError
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("rerank_service")


class RerankService:
    """
    Reorders candidates with `POST {model, query, documents, top_n}`.

    The endpoint answers `{results: [{index, relevance_score}]}`; each
    returned index takes the relevance score as its new score. Missing
    credentials or any request failure leave the input ranking unchanged.
    """

    def __init__(
        self,
        settings: Optional[RerankSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        usage_sink: Optional[UsageSink] = None,
        background: Optional[BackgroundTaskRunner] = None,
    ):
        self.settings = settings or get_settings().rerank
        self._transport = transport
        self._usage_sink = usage_sink
        self._background = background or get_background_runner()

    @property
    def is_configured(self) -> bool:
        return self.settings.is_configured

    async def _request(self, query: str, documents: List[str], top_n: int) -> List[Tuple[int, float]]:
        payload = {
            "model": self.settings.model,
            "query": query,
            "documents": documents,
            "top_n": top_n,
        }
        headers = {
            "Authorization": f"Bearer {self.settings.api_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self.settings.timeout, transport=self._transport) as client:
                response = await client.post(self.settings.api_url, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            raise RerankError("Rerank request timed out") from e
        except httpx.HTTPStatusError as e:
            raise RerankError(
                f"Rerank request failed with status {e.response.status_code}",
                details={"status_code": e.response.status_code},
            ) from e
        except (httpx.RequestError, ValueError) as e:
            raise RerankError(f"Rerank request failed: {e}") from e

        try:
            return [(int(item["index"]), float(item["relevance_score"])) for item in data["results"]]
        except (KeyError, TypeError, ValueError) as e:
            raise RerankError("Malformed rerank response") from e

    async def rerank(
        self, query: str, results: Sequence[SearchResult]
    ) -> Tuple[List[SearchResult], bool]:
        """
        Rerank candidates.

        Returns:
            (results, applied). When `applied` is False the input order and
            scores are returned untouched.
        """
        results = list(results)
        if not results:
            return results, False
        if not self.is_configured:
            logger.debug("Rerank skipped: no API key configured")
            return results, False

        try:
            ranking = await self._request(query, [r.content for r in results], len(results))
        except RerankError as e:
            logger.warning(f"Rerank failed, keeping original order: {e.message}")
            return results, False

        reranked: List[SearchResult] = []
        seen = set()
        for index, score in ranking:
            if not 0 <= index < len(results) or index in seen:
                continue
            seen.add(index)
            reranked.append(results[index].model_copy(update={"score": score}))
        if not reranked:
            logger.warning("Rerank returned no usable results, keeping original order")
            return results, False

        reranked.sort(key=lambda r: r.score, reverse=True)
        # Candidates the endpoint did not return keep their relative order at the end
        reranked.extend(r for i, r in enumerate(results) if i not in seen)
        self._report_usage(len(results))
        return reranked, True

    def _report_usage(self, document_count: int) -> None:
        if self._usage_sink is None:
            return
        self._background.submit(
            self._usage_sink.record(
                feature="rerank_requests",
                provider="rerank",
                model=self.settings.model,
                quantity=1,
                unit="requests",
                metadata={"documents": document_count},
            ),
            name=f"usage:rerank:{self.settings.model}",
        )

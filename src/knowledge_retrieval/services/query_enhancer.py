"""Query enhancement: rewrite, expansion and hypothetical answers (HyDE) via LiteLLM."""

import asyncio
import re
from typing import Any, Dict, List, Optional

from litellm import acompletion

from knowledge_retrieval.config import LLMSettings, get_settings
from knowledge_retrieval.models.search import EnhancedQuery, EnhanceOptions
from knowledge_retrieval.utils.errors import QueryEnhancementError
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("query_enhancer")

REWRITE_PROMPT = """You are a search query optimization expert. Rewrite the user's search query \
into a clearer, more specific form that retrieves better results from a knowledge base.

Rules:
1. Keep the original intent but make the query explicit
2. Remove ambiguity and add the context that is needed
3. Use domain terminology where it applies
4. Stay concise; do not over-expand
5. Output only the rewritten query, no explanation

Examples:
User: "how to use"
Rewrite: "How to use this product or service"

User: "it errors"
Rewrite: "How to fix an error raised while the program runs\""""

EXPAND_PROMPT = """You are a query expansion expert. Produce 3-5 alternative queries related to \
the user's search query to improve recall.

Rules:
1. Include synonym variants
2. Include different phrasings
3. Include related concepts
4. One variant per line
5. Output only the variants, no numbering or explanation

Example input: "how to improve code quality"
Example output:
code quality improvement methods
improving code maintainability
refactoring best practices
code review techniques"""

HYDE_PROMPT = """You write knowledge base documentation. Given a question, write a passage \
that would plausibly appear in real documentation and answer it.

Rules:
1. Write a focused answer of 150-300 words
2. Use an objective, informative tone
3. Include the keywords a real document would contain
4. Avoid hedging such as "I think" or "maybe"
5. Output the passage directly, with no preamble"""

SIMPLE_SYNONYMS: Dict[str, List[str]] = {
    "如何": ["怎么", "怎样", "方法"],
    "怎么": ["如何", "怎样", "方法"],
    "什么": ["哪些", "是什么", "定义"],
    "为什么": ["原因", "为何", "理由"],
    "使用": ["用法", "应用", "操作"],
    "问题": ["错误", "异常", "bug"],
    "配置": ["设置", "设定", "参数"],
    "how": ["how to", "method", "way"],
    "what": ["which", "definition", "meaning"],
    "error": ["bug", "issue", "problem"],
}

MAX_SIMPLE_EXPANSIONS = 3


def simple_expand(query: str) -> List[str]:
    """Synonym-table expansion used when no LLM credentials are configured."""
    expansions: List[str] = []
    lowered = query.lower()
    for word, synonyms in SIMPLE_SYNONYMS.items():
        if word not in lowered:
            continue
        pattern = re.compile(re.escape(word), re.IGNORECASE)
        for synonym in synonyms:
            expanded = pattern.sub(synonym, query)
            if expanded != query:
                expansions.append(expanded)
    return list(dict.fromkeys(expansions))[:MAX_SIMPLE_EXPANSIONS]


def _message_content(response: Any) -> str:
    """First choice content from a LiteLLM response object or plain dict."""
    if isinstance(response, dict):
        choices = response.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        return (message.get("content") or "").strip()
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    return (getattr(choices[0].message, "content", None) or "").strip()


class QueryEnhancer:
    """
    Best-effort query enhancement.

    Each enabled sub-task runs concurrently; a failing sub-task is logged
    and leaves its field unset. Without an API key, rewrite returns the
    original query, expansion uses the synonym table, and HyDE returns "".
    """

    def __init__(self, settings: Optional[LLMSettings] = None):
        self.settings = settings or get_settings().llm

    @property
    def is_configured(self) -> bool:
        return self.settings.is_configured

    async def _complete(self, system_prompt: str, user_prompt: str, max_tokens: int, temperature: float) -> str:
        params: Dict[str, Any] = {
            "model": self.settings.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
            "timeout": self.settings.timeout,
            "api_key": self.settings.api_key,
        }
        if self.settings.api_base:
            params["api_base"] = self.settings.api_base

        try:
            response = await acompletion(**params)
        except Exception as e:
            raise QueryEnhancementError(
                f"LLM call failed: {e}", model=self.settings.model
            ) from e
        return _message_content(response)

    async def rewrite(self, query: str) -> str:
        if not self.is_configured:
            return query
        content = await self._complete(
            REWRITE_PROMPT, f"Rewrite this query: {query}", max_tokens=150, temperature=0.3
        )
        return content or query

    async def expand(self, query: str) -> List[str]:
        if not self.is_configured:
            return simple_expand(query)
        content = await self._complete(
            EXPAND_PROMPT, f"Generate variants for this query: {query}", max_tokens=200, temperature=0.5
        )
        lines = (line.strip() for line in content.split("\n"))
        return [line for line in lines if line and line != query]

    async def hypothetical_answer(self, query: str) -> str:
        if not self.is_configured:
            return ""
        return await self._complete(HYDE_PROMPT, f"Question: {query}", max_tokens=400, temperature=0.3)

    async def enhance(self, query: str, options: Optional[EnhanceOptions] = None) -> EnhancedQuery:
        """Run the enabled sub-tasks concurrently and keep whatever succeeds."""
        options = options or EnhanceOptions()
        result = EnhancedQuery(original=query)

        tasks = {}
        if options.rewrite:
            tasks["rewritten"] = self.rewrite(query)
        if options.expand:
            tasks["expanded"] = self.expand(query)
        if options.hyde:
            tasks["hypothetical_answer"] = self.hypothetical_answer(query)
        if not tasks:
            return result

        outcomes = await asyncio.gather(*tasks.values(), return_exceptions=True)
        for field, outcome in zip(tasks.keys(), outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"Query enhancement step failed: step={field}, error={outcome}")
                continue
            setattr(result, field, outcome)
        return result


def get_search_queries(enhanced: EnhancedQuery) -> List[str]:
    """Original, rewritten, expanded and hypothetical queries, de-duplicated in order."""
    queries = [enhanced.original]
    if enhanced.rewritten and enhanced.rewritten != enhanced.original:
        queries.append(enhanced.rewritten)
    if enhanced.expanded:
        queries.extend(enhanced.expanded)
    if enhanced.hypothetical_answer:
        queries.append(enhanced.hypothetical_answer)
    return list(dict.fromkeys(q for q in queries if q))

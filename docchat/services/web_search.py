"""
Web Search Augmentation

Optional live web results for chat answers, via a Tavily-compatible
search API. The user's question is first rewritten into a search query
by the LLM; if that fails the original question is used. Results below
WEB_SEARCH_MIN_SCORE are dropped. Every failure degrades to "no
results"; web search never fails a chat turn.
"""

from __future__ import annotations

import logging
from typing import Final

import httpx

from docchat.core.config import settings
from docchat.models.schemas import SearchInfo, WebSearchResult
from docchat.services.llm import LLMService

logger = logging.getLogger(__name__)

ENHANCE_PROMPT: Final[str] = """Rewrite the user's question into a single, precise web search query.
Keep key entities and domain terms, add useful synonyms, drop conversational filler.
{context}
QUESTION: {query}

Output ONLY the search query, nothing else."""


class WebSearchService:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        url: str | None = None,
        min_score: float | None = None,
        max_results: int | None = None,
        timeout: float | None = None,
        llm: LLMService | None = None,
    ) -> None:
        self._api_key = settings.WEB_SEARCH_API_KEY if api_key is None else api_key
        self._url = url or settings.WEB_SEARCH_URL
        self._min_score = (
            settings.WEB_SEARCH_MIN_SCORE if min_score is None else min_score
        )
        self._max_results = max_results or settings.WEB_SEARCH_MAX_RESULTS
        self._timeout = timeout or settings.WEB_SEARCH_TIMEOUT_SECONDS
        self._llm = llm

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    async def enhance_query(self, query: str, rag_context: str = "") -> str:
        """LLM-rewritten search query, or ``query`` itself when that fails."""
        if self._llm is None:
            return query
        context = (
            f"\nKNOWLEDGE BASE CONTEXT:\n{rag_context[:1500]}\n" if rag_context else ""
        )
        response = await self._llm.complete(
            ENHANCE_PROMPT.format(query=query, context=context)
        )
        content = "" if response.is_mocked else response.content.strip()
        if not content:
            logger.info("Search query enhancement unavailable, using original query")
            return query
        return content.splitlines()[0].strip(' "') or query

    async def search(self, query: str) -> list[WebSearchResult]:
        if not self.enabled:
            return []
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    self._url,
                    json={
                        "api_key": self._api_key,
                        "query": query,
                        "max_results": self._max_results,
                        "search_depth": "basic",
                    },
                )
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Web search failed (%s): %s", type(exc).__name__, exc)
            return []

        results = [
            WebSearchResult(
                title=item.get("title", ""),
                url=item.get("url", ""),
                content=item.get("content", ""),
                score=float(item.get("score", 0.0)),
            )
            for item in response.json().get("results", [])
        ]
        kept = [r for r in results if r.score >= self._min_score]
        logger.info(
            "Web search returned %d results, %d above score %.2f",
            len(results),
            len(kept),
            self._min_score,
        )
        return kept

    async def search_with_enhancement(self, query: str, rag_context: str = "") -> SearchInfo:
        enhanced = await self.enhance_query(query, rag_context)
        results = await self.search(enhanced)
        return SearchInfo(original=query, enhanced=enhanced, results=results)


def format_web_results(results: list[WebSearchResult]) -> str:
    return "\n\n".join(
        f"[WEB: {r.title or r.url}] ({r.url})\n{r.content}" for r in results
    )

"""Tavily-backed web search for the ``web_search`` tool."""

from typing import Any

import httpx
import structlog

from config import settings

logger = structlog.get_logger(__name__)

DEFAULT_MAX_RESULTS = 5
MAX_RESULTS_CAP = 10


class WebSearchError(RuntimeError):
    """Raised when a web search cannot be performed."""


class WebSearchClient:
    """Thin async client for the Tavily search API.

    Args:
        api_key: Tavily API key. Defaults to ``settings.tavily_api_key``.
        url: Search endpoint. Defaults to ``settings.tavily_api_url``.
        timeout_seconds: Request timeout.
        client: Optional shared ``httpx.AsyncClient`` (used by tests).
    """

    def __init__(
        self,
        api_key: str | None = None,
        url: str | None = None,
        timeout_seconds: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = (api_key if api_key is not None else settings.tavily_api_key).strip()
        self._url = url or settings.tavily_api_url
        self._timeout = timeout_seconds or settings.web_search_timeout_seconds
        self._client = client

    async def search(
        self,
        query: str,
        *,
        search_depth: str = "basic",
        max_results: int | None = None,
        include_answer: bool = True,
        include_domains: list[str] | None = None,
        exclude_domains: list[str] | None = None,
    ) -> dict[str, Any]:
        """Run a search and return ``{query, answer, results:[{title, url, content, score}]}``.

        Raises:
            WebSearchError: If no API key is configured or the request fails.
        """
        if not self._api_key:
            raise WebSearchError("web search is not configured (missing Tavily API key)")

        limit = min(max(int(max_results or DEFAULT_MAX_RESULTS), 1), MAX_RESULTS_CAP)
        body: dict[str, Any] = {
            "query": query,
            "search_depth": search_depth,
            "max_results": limit,
            "include_answer": include_answer,
        }
        if include_domains:
            body["include_domains"] = include_domains
        if exclude_domains:
            body["exclude_domains"] = exclude_domains

        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            if self._client is not None:
                response = await self._client.post(self._url, json=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self._url, json=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("web_search_failed", query=query[:100], error=str(exc))
            raise WebSearchError(f"web search failed: {exc}") from exc

        payload = response.json()
        results = [
            {
                "title": item.get("title"),
                "url": item.get("url"),
                "content": item.get("content"),
                "score": item.get("score"),
            }
            for item in payload.get("results") or []
        ]
        logger.debug("web_search_completed", query=query[:100], result_count=len(results))
        return {"query": query, "answer": payload.get("answer"), "results": results[:limit]}

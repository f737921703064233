from __future__ import annotations

from typing import Any

from tavily import AsyncTavilyClient

from deepresearch.config import settings
from deepresearch.models.research import SearchResult
from deepresearch.tools.web_utils import safe_domain


def time_range_for(recency_days: int | None) -> str | None:
    if not recency_days:
        return None
    if recency_days <= 1:
        return "day"
    if recency_days <= 7:
        return "week"
    if recency_days <= 31:
        return "month"
    return "year"


def is_available() -> bool:
    return bool(settings.tavily_api_key)


async def search(
    query: str,
    *,
    recency_days: int | None = None,
    limit: int = 8,
    search_depth: str = "basic",
) -> list[SearchResult]:
    """Execute a Tavily web search and return normalized results."""
    client = AsyncTavilyClient(api_key=settings.tavily_api_key)

    kwargs: dict[str, Any] = {
        "query": query,
        "search_depth": search_depth,
        "max_results": limit,
        "topic": "general",
    }
    time_range = time_range_for(recency_days)
    if time_range:
        kwargs["time_range"] = time_range

    response = await client.search(**kwargs)

    return [
        SearchResult(
            url=r.get("url", ""),
            title=r.get("title", "") or r.get("url", ""),
            domain=safe_domain(r.get("url", "")),
            snippet=r.get("content") or None,
            published_at=r.get("published_date"),
            score=r.get("score"),
            metadata={"provider": "tavily"},
        )
        for r in response.get("results", [])
        if r.get("url")
    ]

from __future__ import annotations

from typing import Any

import httpx

from deepresearch.config import settings
from deepresearch.models.research import SearchResult
from deepresearch.tools.web_utils import safe_domain

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"


def freshness_for(recency_days: int | None) -> str | None:
    if not recency_days:
        return None
    if recency_days <= 1:
        return "pd"
    if recency_days <= 7:
        return "pw"
    if recency_days <= 31:
        return "pm"
    return "py"


def is_available() -> bool:
    return bool(settings.brave_api_key)


async def search(
    query: str,
    *,
    recency_days: int | None = None,
    limit: int = 8,
) -> list[SearchResult]:
    """Execute a Brave web search and normalize results."""
    if not settings.brave_api_key:
        raise RuntimeError("BRAVE_API_KEY is not configured")

    params: dict[str, Any] = {
        "q": query,
        "count": limit,
    }
    freshness = freshness_for(recency_days)
    if freshness:
        params["freshness"] = freshness

    async with httpx.AsyncClient(timeout=settings.search_timeout_seconds) as client:
        response = await client.get(
            BRAVE_SEARCH_URL,
            params=params,
            headers={
                "Accept": "application/json",
                "X-Subscription-Token": settings.brave_api_key,
            },
        )
        response.raise_for_status()
        payload = response.json()

    raw_results = payload.get("web", {}).get("results", [])
    total = max(len(raw_results), 1)
    mapped: list[SearchResult] = []
    for idx, item in enumerate(raw_results):
        url = item.get("url", "")
        if not url:
            continue
        snippets = item.get("extra_snippets", []) or []
        description = (item.get("description", "") or "").strip() or " ".join(snippets).strip()
        # Rank position stands in for relevance; the API exposes no score.
        mapped.append(
            SearchResult(
                url=url,
                title=item.get("title", "") or url,
                domain=safe_domain(url),
                snippet=description or None,
                published_at=item.get("page_age") or item.get("age"),
                score=max(0.0, 1.0 - (idx / total)),
                metadata={"provider": "brave"},
            )
        )
    return mapped[:limit]

"""Balanced multi-backend web search.

Backends are plain modules exposing ``is_available()`` and an async
``search(query, *, recency_days, limit)``; the registry maps a configured
name to its module.
"""
from __future__ import annotations

from types import ModuleType

from loguru import logger

from deepresearch.config import settings
from deepresearch.models.research import SearchResult
from deepresearch.tools import brave_search, duckduckgo_search, openrouter_web_search, tavily_search

DEFAULT_PROVIDER = "duckduckgo"

PROVIDERS: dict[str, ModuleType] = {
    "openrouter_web": openrouter_web_search,
    "tavily": tavily_search,
    "brave": brave_search,
    "duckduckgo": duckduckgo_search,
}


def provider_order(configured: list[str] | None = None) -> list[str]:
    """Configured provider names filtered to known, available backends."""
    names = configured if configured is not None else settings.search_provider_list
    order: list[str] = []
    for name in names:
        module = PROVIDERS.get(name)
        if module is None or name in order:
            continue
        if module.is_available():
            order.append(name)
    return order or [DEFAULT_PROVIDER]


def rotate_providers(order: list[str], offset: int) -> list[str]:
    if not order:
        return []
    shift = offset % len(order)
    return order[shift:] + order[:shift]


def dedupe_results(results: list[SearchResult], limit: int) -> list[SearchResult]:
    seen: set[str] = set()
    deduped: list[SearchResult] = []
    for result in results:
        if not result.url or result.url in seen:
            continue
        seen.add(result.url)
        deduped.append(result)
        if len(deduped) >= limit:
            break
    return deduped


async def search_with_provider(
    name: str,
    query: str,
    *,
    recency_days: int | None,
    limit: int,
) -> list[SearchResult]:
    """Call one backend; any failure degrades to an empty list."""
    module = PROVIDERS[name]
    try:
        return await module.search(query, recency_days=recency_days, limit=limit)
    except Exception as exc:
        logger.warning(f"Search provider {name} failed for '{query[:80]}': {exc}")
        return []


async def search_balanced(
    query: str,
    *,
    recency_days: int | None = None,
    limit: int = 8,
    sub_question_index: int = 0,
    retry: int = 0,
) -> list[SearchResult]:
    """Query providers in rotated order until enough distinct URLs are found.

    The rotation offset is ``sub_question_index + retry`` so parallel
    sub-questions and successive retries lead with different backends.
    """
    order = rotate_providers(provider_order(), sub_question_index + retry)
    target = min(limit, settings.search_target_results)
    combined: list[SearchResult] = []
    deduped: list[SearchResult] = []
    for name in order:
        combined.extend(
            await search_with_provider(name, query, recency_days=recency_days, limit=limit)
        )
        deduped = dedupe_results(combined, limit)
        if len(deduped) >= target:
            break
    logger.debug(f"Balanced search returned {len(deduped)} results via {order} for '{query[:80]}'")
    return deduped

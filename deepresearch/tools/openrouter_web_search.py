"""Model-mediated web search through an OpenRouter ``:online`` model.

The model is asked to search and the url citations attached to its reply are
normalized into search results; the reply text itself is ignored.
"""
from __future__ import annotations

from typing import Any

from deepresearch import llm_client
from deepresearch.models.research import SearchResult
from deepresearch.tools.web_utils import collapse_whitespace, is_valid_url, safe_domain


def is_available() -> bool:
    return llm_client.is_configured()


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    value = getattr(obj, name, None)
    if value is None:
        extra = getattr(obj, "model_extra", None) or {}
        value = extra.get(name)
    return value


def citations_from_response(response: Any) -> list[dict[str, Any]]:
    choices = _field(response, "choices") or []
    if not choices:
        return []
    message = _field(choices[0], "message")
    annotations = _field(message, "annotations") or []
    citations: list[dict[str, Any]] = []
    for annotation in annotations:
        if _field(annotation, "type") != "url_citation":
            continue
        citation = _field(annotation, "url_citation") or {}
        url = _field(citation, "url")
        if not url:
            continue
        citations.append(
            {
                "url": url,
                "title": _field(citation, "title"),
                "content": _field(citation, "content"),
            }
        )
    return citations


def _recency_instruction(recency_days: int | None) -> str:
    if not recency_days:
        return "Prefer the most recent authoritative sources."
    return f"Only include sources published within the last {recency_days} days when possible."


async def search(
    query: str,
    *,
    recency_days: int | None = None,
    limit: int = 8,
) -> list[SearchResult]:
    prompt = (
        f"Run a web search for this query and return high-quality sources only: {query}. "
        f"{_recency_instruction(recency_days)}"
    )
    response = await llm_client.complete(
        prompt,
        caller="openrouter_web_search",
        model=llm_client.get_model("web_search"),
        max_tokens=1200,
    )

    results: list[SearchResult] = []
    seen: set[str] = set()
    total = max(limit, 1)
    for citation in citations_from_response(response):
        url = citation["url"]
        if url in seen or not is_valid_url(url):
            continue
        seen.add(url)
        snippet = collapse_whitespace(citation.get("content") or "") or None
        results.append(
            SearchResult(
                url=url,
                title=citation.get("title") or url,
                domain=safe_domain(url),
                snippet=snippet,
                score=max(0.0, 1.0 - len(results) / total),
                metadata={"provider": "openrouter_web", "model": llm_client.get_model("web_search")},
            )
        )
        if len(results) >= limit:
            break
    return results

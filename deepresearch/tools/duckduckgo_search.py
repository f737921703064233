"""Lexical web search against the DuckDuckGo HTML endpoint."""
from __future__ import annotations

from urllib.parse import parse_qs, unquote, urlparse

import httpx
from bs4 import BeautifulSoup

from deepresearch.config import settings
from deepresearch.models.research import SearchResult
from deepresearch.tools.web_utils import BROWSER_USER_AGENT, collapse_whitespace, is_valid_url, safe_domain

DUCKDUCKGO_HTML_URL = "https://duckduckgo.com/html/"


def recency_filter(recency_days: int | None) -> str | None:
    if not recency_days:
        return None
    if recency_days <= 7:
        return "d"
    if recency_days <= 30:
        return "w"
    if recency_days <= 120:
        return "m"
    return "y"


def _resolve_href(href: str) -> str:
    # Result links are sometimes wrapped in a /l/?uddg=<target> redirect.
    if href.startswith("//"):
        href = "https:" + href
    parsed = urlparse(href)
    if parsed.path.startswith("/l/"):
        target = parse_qs(parsed.query).get("uddg")
        if target:
            return unquote(target[0])
    return href


def parse_results(html: str, limit: int) -> list[SearchResult]:
    soup = BeautifulSoup(html, "html.parser")
    results: list[SearchResult] = []
    for container in soup.select(".result"):
        anchor = container.select_one("a.result__a")
        if anchor is None or not anchor.get("href"):
            continue
        url = _resolve_href(str(anchor["href"]))
        if not is_valid_url(url):
            continue
        snippet_node = container.select_one(".result__snippet")
        snippet = collapse_whitespace(snippet_node.get_text(" ")) if snippet_node else None
        results.append(
            SearchResult(
                url=url,
                title=collapse_whitespace(anchor.get_text(" ")) or url,
                domain=safe_domain(url),
                snippet=snippet or None,
                metadata={"provider": "duckduckgo_html"},
            )
        )
        if len(results) >= limit:
            break
    return results


async def search(
    query: str,
    *,
    recency_days: int | None = None,
    limit: int = 8,
) -> list[SearchResult]:
    """Run a DuckDuckGo HTML search and normalize the result anchors."""
    params = {"q": query}
    df = recency_filter(recency_days)
    if df:
        params["df"] = df

    async with httpx.AsyncClient(timeout=settings.search_timeout_seconds, follow_redirects=True) as client:
        response = await client.get(
            DUCKDUCKGO_HTML_URL,
            params=params,
            headers={"User-Agent": BROWSER_USER_AGENT},
        )
        response.raise_for_status()
        html = response.text

    return parse_results(html, limit)


def is_available() -> bool:
    return True

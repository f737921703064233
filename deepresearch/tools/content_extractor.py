"""Fetch a page and reduce it to bounded plain text."""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import httpx
import trafilatura
from bs4 import BeautifulSoup
from loguru import logger

from deepresearch.config import settings
from deepresearch.models.research import utcnow
from deepresearch.tools.web_utils import BROWSER_USER_AGENT, truncate

MIN_TRAFILATURA_CHARS = 200


@dataclass
class FetchedSource:
    url: str
    title: Optional[str]
    text: Optional[str]
    method: str = "none"
    retrieved_at: datetime = field(default_factory=utcnow)


def _normalize_text(text: str) -> str:
    text = text.replace("\xa0", " ")
    text = re.sub(r"\r\n?", "\n", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _soup_title(soup: BeautifulSoup) -> Optional[str]:
    if soup.title and soup.title.string:
        return _normalize_text(soup.title.string) or None
    return None


def _soup_text(soup: BeautifulSoup) -> str:
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    return _normalize_text(re.sub(r"\s+", " ", soup.get_text(" ")))


def extract_main_text(raw_html: str, *, max_chars: int | None = None) -> tuple[Optional[str], str, str]:
    """Return ``(title, text, method)`` for an HTML document.

    Trafilatura is preferred; pages where it finds little content fall back
    to the tag-stripped document text.
    """
    limit = max_chars if max_chars is not None else settings.fetch_max_chars
    soup = BeautifulSoup(raw_html, "html.parser")
    title = _soup_title(soup)

    extracted = trafilatura.extract(raw_html, output_format="txt")
    if isinstance(extracted, str):
        text = _normalize_text(extracted)
        if len(text) >= MIN_TRAFILATURA_CHARS:
            return title, truncate(text, limit), "trafilatura"

    return title, truncate(_soup_text(soup), limit), "html_text"


async def fetch_source(url: str) -> FetchedSource:
    """Fetch ``url`` and extract its text. Never raises; failures yield ``text=None``."""
    try:
        async with httpx.AsyncClient(
            timeout=settings.fetch_timeout_seconds,
            follow_redirects=True,
        ) as client:
            response = await client.get(url, headers={"User-Agent": BROWSER_USER_AGENT})
        if response.status_code >= 400:
            logger.debug(f"Fetch {url} returned HTTP {response.status_code}")
            return FetchedSource(url=url, title=None, text=None)

        content_type = response.headers.get("content-type", "")
        body = response.text
        if "html" not in content_type and "<html" not in body[:2000].lower():
            text = truncate(_normalize_text(body), settings.fetch_max_chars)
            return FetchedSource(url=url, title=None, text=text or None, method="raw")

        title, text, method = await asyncio.to_thread(extract_main_text, body)
        return FetchedSource(url=url, title=title, text=text or None, method=method)
    except Exception as exc:
        logger.debug(f"Fetch {url} failed: {exc}")
        return FetchedSource(url=url, title=None, text=None)

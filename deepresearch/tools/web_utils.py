from __future__ import annotations

import re
from urllib.parse import urlparse

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


def is_valid_url(url: str) -> bool:
    """Basic URL validation."""
    try:
        result = urlparse(url)
    except ValueError:
        return False
    return result.scheme in ("http", "https") and bool(result.netloc)


def normalize_domain(domain: str | None) -> str:
    if not domain:
        return ""
    value = domain.strip().lower()
    return value[4:] if value.startswith("www.") else value


def safe_domain(url: str) -> str | None:
    """Lower-cased hostname without a leading www., or None for unparsable URLs."""
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        return None
    return normalize_domain(hostname) or None


def collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars]

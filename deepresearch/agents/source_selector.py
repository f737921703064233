"""Search-query construction plus source scoring and selection.

Everything here is a pure function over plain data so the heuristics can be
tuned and tested without network access.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

from deepresearch.config import settings
from deepresearch.models.research import SearchResult
from deepresearch.tools.web_utils import collapse_whitespace, normalize_domain

MAX_QUERY_CHARS = 320
MAX_PER_DOMAIN = 2
DEFAULT_PROVIDER_SCORE = 0.35
RECOMMENDATION_THRESHOLD = 0.45
DEFAULT_THRESHOLD = 0.3

RECOMMENDATION_QUERY_HINTS = (
    "best",
    "recommend",
    "options",
    "buy",
    "budget",
    "under $",
    "price",
    "review",
    "compare",
)

LOW_QUALITY_DOMAIN_PATTERNS = (
    re.compile(r"blogspot\.", re.IGNORECASE),
    re.compile(r"wordpress\.", re.IGNORECASE),
    re.compile(r"aromatherapy", re.IGNORECASE),
    re.compile(r"chairlines", re.IGNORECASE),
    re.compile(r"zorkafurniture", re.IGNORECASE),
)

RECOMMENDATION_EXCLUDED_DOMAINS = frozenset({"pinterest.com", "reddit.com"})

LANDING_PAGE_MARKERS = ("/search?", "keyword.php", "?keyword=", "/ideas/")

LISTICLE_MARKERS = ("top 10", "top 20", "best of", "sponsored")

_BUDGET_PATTERNS = (
    re.compile(r"under\s+\$?\s*(\d{2,5})", re.IGNORECASE),
    re.compile(r"budget(?:\s+is|\s+of)?\s+\$?\s*(\d{2,5})", re.IGNORECASE),
    re.compile(r"\$+\s*(\d{2,5})"),
)


@dataclass(frozen=True)
class TopicProfile:
    """Query-activated vocabulary that sharpens search and scoring for one product area."""

    name: str
    triggers: tuple[str, ...]
    # query keyword -> phrase appended to the search query
    intent_terms: tuple[tuple[str, str], ...]
    default_intent: str
    boost_terms: tuple[str, ...]
    off_topic_phrases: tuple[str, ...]
    off_topic_context: tuple[str, ...]

    def matches(self, text: str) -> bool:
        lowered = text.lower()
        return any(trigger in lowered for trigger in self.triggers)

    @property
    def exclusions(self) -> str:
        return " ".join(f"-{term}" for term in self.off_topic_context)


SEATING_PROFILE = TopicProfile(
    name="seating",
    triggers=("chair", "armchair", "recliner", "loveseat", "chaise"),
    intent_terms=(
        ("chair and a half", '"chair and a half"'),
        ("chaise", "chaise lounge"),
        ("cuddle", "cuddle chair"),
        ("reading", "reading chair"),
        ("bedroom", "bedroom"),
    ),
    default_intent="oversized chair",
    boost_terms=("chair and a half", "chaise", "cuddle", "oversized", "bedroom", "reading"),
    off_topic_phrases=("office chair", "gaming chair", "desk chair", "computer chair"),
    off_topic_context=("office", "desk", "gaming", "computer"),
)

TOPIC_PROFILES: tuple[TopicProfile, ...] = (SEATING_PROFILE,)


def match_profile(query: str) -> TopicProfile | None:
    for profile in TOPIC_PROFILES:
        if profile.matches(query):
            return profile
    return None


def is_recommendation_query(query: str) -> bool:
    lowered = query.lower()
    return any(hint in lowered for hint in RECOMMENDATION_QUERY_HINTS)


def is_search_landing_page(url: str) -> bool:
    lowered = url.lower()
    return any(marker in lowered for marker in LANDING_PAGE_MARKERS)


def budget_hint(query: str) -> str:
    for pattern in _BUDGET_PATTERNS:
        match = pattern.search(query)
        if match:
            return f"under ${match.group(1)}"
    return ""


def _intent_phrase(profile: TopicProfile | None, query: str) -> str:
    if profile is None:
        return ""
    lowered = query.lower()
    terms = [phrase for keyword, phrase in profile.intent_terms if keyword in lowered]
    terms.append(profile.default_intent)
    return " ".join(terms[:5])


def build_search_query(query: str, sub_question: str, retry: int) -> str:
    """Search string for one attempt; retries rotate through alternate phrasings."""
    normalized = collapse_whitespace(query)
    profile = match_profile(normalized)
    intent = _intent_phrase(profile, normalized)
    budget = budget_hint(normalized)
    exclusions = profile.exclusions if profile else ""

    if is_recommendation_query(normalized):
        variants = [
            f"{sub_question} {intent} {budget} {exclusions}",
            f"{intent} {budget} product dimensions materials comfort reviews {sub_question} {exclusions}",
            f"{intent} {budget} top options with specs and verified customer reviews {sub_question} {exclusions}",
        ]
    else:
        variants = [
            f"{sub_question} {intent} {budget}",
            f"{sub_question} evidence data analysis {budget}",
            f"{sub_question} expert review research findings {normalized}",
        ]
    selected = collapse_whitespace(variants[min(max(retry, 0), len(variants) - 1)]) or sub_question
    return selected[:MAX_QUERY_CHARS]


def _domain_of(result: SearchResult) -> str:
    return normalize_domain(result.domain)


def _is_trusted(domain: str, trusted: set[str]) -> bool:
    return any(domain == entry or domain.endswith("." + entry) for entry in trusted)


def score_search_result(
    result: SearchResult,
    query: str,
    sub_question: str,
    *,
    trusted_domains: set[str] | None = None,
) -> float:
    trusted = trusted_domains if trusted_domains is not None else settings.trusted_domain_set
    if result.score is not None:
        score = min(1.0, max(0.0, float(result.score)))
    else:
        score = DEFAULT_PROVIDER_SCORE

    domain = _domain_of(result)
    text = f"{result.title or ''} {result.snippet or ''}".lower()
    context = f"{query} {sub_question}".lower()

    if domain and _is_trusted(domain, trusted):
        score += 0.2
    if any(pattern.search(domain) for pattern in LOW_QUALITY_DOMAIN_PATTERNS):
        score -= 0.35
    if is_search_landing_page(result.url):
        score -= 0.3

    profile = match_profile(context)
    if profile is not None:
        if any(phrase in text for phrase in profile.off_topic_phrases) and not any(
            term in context for term in profile.off_topic_context
        ):
            score -= 0.45
        if any(term in text for term in profile.boost_terms):
            score += 0.15

    if any(marker in text for marker in LISTICLE_MARKERS):
        score -= 0.1
    if result.snippet and len(result.snippet) > 40:
        score += 0.05

    return min(1.0, max(0.0, score))


def select_search_results(
    results: Iterable[SearchResult],
    *,
    query: str,
    sub_question: str,
    seen_urls: set[str],
    limit: int,
    trusted_domains: set[str] | None = None,
) -> list[SearchResult]:
    """Rank unseen candidates and keep the best ones.

    Falls back to the top-scored unseen candidates when the quality filters
    reject everything, so a sub-question is never starved of sources.
    """
    recommendation_mode = is_recommendation_query(query)
    threshold = RECOMMENDATION_THRESHOLD if recommendation_mode else DEFAULT_THRESHOLD

    candidates = [r for r in results if r.url and r.url not in seen_urls]
    scored = [
        (score_search_result(r, query, sub_question, trusted_domains=trusted_domains), r)
        for r in candidates
    ]
    scored.sort(key=lambda item: item[0], reverse=True)

    selected: list[SearchResult] = []
    per_domain: dict[str, int] = {}
    chosen_urls: set[str] = set()
    for score, result in scored:
        if len(selected) >= limit:
            break
        if result.url in chosen_urls:
            continue
        domain = _domain_of(result) or "unknown"
        if per_domain.get(domain, 0) >= MAX_PER_DOMAIN:
            continue
        if recommendation_mode and (
            domain in RECOMMENDATION_EXCLUDED_DOMAINS or is_search_landing_page(result.url)
        ):
            continue
        if score < threshold:
            continue
        per_domain[domain] = per_domain.get(domain, 0) + 1
        chosen_urls.add(result.url)
        selected.append(result)

    if selected:
        return selected

    fallback: list[SearchResult] = []
    for _, result in scored:
        if result.url in chosen_urls:
            continue
        chosen_urls.add(result.url)
        fallback.append(result)
        if len(fallback) >= limit:
            break
    return fallback

"""Lexical relevance scoring and excerpt selection for fetched text."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from rank_bm25 import BM25Okapi

MIN_RELEVANCE = 0.08
MAX_EXCERPT_CHARS = 400

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")


@dataclass
class ExtractedEvidence:
    excerpt: Optional[str]
    relevance_score: float
    notes: str


def tokenize(text: str) -> list[str]:
    cleaned = _NON_ALNUM_RE.sub(" ", (text or "").lower())
    return [token for token in cleaned.split() if len(token) > 2]


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_SPLIT_RE.split(text or "") if s.strip()]


def relevance_score(source_tokens: list[str], question_tokens: set[str]) -> float:
    """Overlap ratio, monotonic in the number of question tokens found."""
    if not source_tokens or not question_tokens:
        return 0.0
    overlap = sum(1 for token in source_tokens if token in question_tokens)
    return min(1.0, overlap / max(6, len(question_tokens) * 3))


def relevance_note(score: float) -> str:
    if score >= 0.7:
        return "High lexical overlap with sub-question"
    if score >= 0.4:
        return "Moderate lexical overlap with sub-question"
    return "Weak lexical overlap with sub-question"


def best_sentence(sentences: list[str], question_tokens: set[str]) -> str:
    """Pick the sentence BM25 ranks highest for the question; ties go to the earliest."""
    tokenized = [tokenize(sentence) for sentence in sentences]
    if any(tokenized):
        scores = BM25Okapi([tokens or ["_"] for tokens in tokenized]).get_scores(sorted(question_tokens))
        best_idx = max(range(len(sentences)), key=lambda idx: (scores[idx], -idx))
        if scores[best_idx] > 0:
            return sentences[best_idx]
    for sentence, tokens in zip(sentences, tokenized):
        if question_tokens.intersection(tokens):
            return sentence
    return sentences[0]


def extract_evidence(text: str, sub_question: str) -> ExtractedEvidence:
    source_tokens = tokenize(text)
    question_tokens = set(tokenize(sub_question))
    if not source_tokens or not question_tokens:
        return ExtractedEvidence(excerpt=None, relevance_score=0.0, notes="No lexical overlap available")

    score = relevance_score(source_tokens, question_tokens)
    sentences = split_sentences(text)
    excerpt = best_sentence(sentences, question_tokens)[:MAX_EXCERPT_CHARS] if sentences else None
    return ExtractedEvidence(excerpt=excerpt, relevance_score=score, notes=relevance_note(score))

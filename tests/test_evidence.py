from __future__ import annotations

from deepresearch.tools import evidence
from deepresearch.tools.evidence import extract_evidence, relevance_score, split_sentences, tokenize


def test_tokenize_drops_short_tokens_and_punctuation():
    assert tokenize("A Heat-pump is OK, at -15C!") == ["heat", "pump", "15c"]


def test_split_sentences():
    text = "First sentence. Second one! Third?  Trailing"
    assert split_sentences(text) == ["First sentence.", "Second one!", "Third?", "Trailing"]


def test_relevance_score_bounds_and_monotonic():
    question = set(tokenize("heat pump efficiency freezing"))
    low = relevance_score(tokenize("the heat was high"), question)
    high = relevance_score(tokenize("heat pump efficiency stays high when freezing heat pump"), question)
    assert 0.0 <= low < high <= 1.0
    assert relevance_score([], question) == 0.0
    assert relevance_score(["heat"], set()) == 0.0


def test_extract_evidence_picks_most_relevant_sentence():
    text = (
        "Our company was founded in 1998 and sells appliances. "
        "Cold climate heat pumps maintain strong efficiency even when temperatures drop below freezing. "
        "Contact us for a free quote."
    )
    result = extract_evidence(text, "How efficient are heat pumps below freezing?")

    assert result.excerpt.startswith("Cold climate heat pumps")
    assert 0.0 < result.relevance_score <= 1.0
    assert result.notes.endswith("lexical overlap with sub-question")


def test_extract_evidence_without_overlap_tokens():
    result = extract_evidence("", "How efficient are heat pumps?")
    assert result.excerpt is None
    assert result.relevance_score == 0.0
    assert result.notes == "No lexical overlap available"


def test_excerpt_is_capped():
    sentence = "heat pump " * 200
    result = extract_evidence(sentence, "heat pump")
    assert len(result.excerpt) == evidence.MAX_EXCERPT_CHARS


def test_extraction_is_deterministic():
    text = "Heat pumps work. Heat pumps work. Efficiency matters for heat pumps."
    first = extract_evidence(text, "heat pumps efficiency")
    second = extract_evidence(text, "heat pumps efficiency")
    assert first == second

from __future__ import annotations

import pytest
from conftest import make_finding

from deepresearch.models.research import Effort, FindingStatus, get_budget
from deepresearch.services.quality import assess_run_quality, is_fallback_finding

STANDARD = get_budget(Effort.STANDARD)


def test_well_supported_run_has_no_warnings():
    findings = [
        make_finding("r", sub_question=f"Q{i}", source_ids=[f"s{i}a", f"s{i}b"], confidence=0.85)
        for i in range(3)
    ]
    quality = assess_run_quality(findings, source_count=6, total_sub_questions=3, budget=STANDARD)

    assert quality.warnings == []
    assert quality.answered_sub_question_count == 3
    assert quality.multi_source_finding_count == 3
    assert quality.score == pytest.approx(1.0)


def test_empty_run_collects_every_relevant_warning():
    quality = assess_run_quality([], source_count=0, total_sub_questions=4, budget=STANDARD)

    assert quality.warnings == [
        "Only 0 sources were collected; expected at least 4 for this effort level.",
        "Only 0/4 sub-questions were answered with cited evidence.",
    ]
    assert quality.score == 0.0


def test_quick_budget_still_expects_three_sources():
    quality = assess_run_quality(
        [make_finding("r", source_ids=["a", "b"])],
        source_count=2,
        total_sub_questions=3,
        budget=get_budget(Effort.QUICK),
    )
    assert quality.warnings[0] == "Only 2 sources were collected; expected at least 3 for this effort level."


def test_uncorroborated_and_unknown_findings_warn():
    findings = [
        make_finding("r", sub_question="Q1", source_ids=["a"], confidence=0.9),
        make_finding("r", sub_question="Q2", source_ids=[], status=FindingStatus.UNKNOWN, confidence=0.2),
        make_finding("r", sub_question="Q3", source_ids=["b"], confidence=0.3),
    ]
    quality = assess_run_quality(findings, source_count=5, total_sub_questions=3, budget=STANDARD)

    assert "No findings were corroborated by at least two independent sources." in quality.warnings
    assert "More than half of findings remained unknown or low-confidence." in quality.warnings
    assert quality.unknown_finding_count == 2
    assert 0.0 <= quality.score < 1.0


def test_fallback_marker_is_case_insensitive():
    assert is_fallback_finding(make_finding("r", notes="Fallback synthesis from lexical evidence extraction"))
    assert is_fallback_finding(make_finding("r", notes="used FALLBACK SYNTHESIS"))
    assert not is_fallback_finding(make_finding("r", notes=None))

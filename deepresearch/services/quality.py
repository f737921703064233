"""Post-run quality assessment."""
from __future__ import annotations

import math
from dataclasses import dataclass, field

from deepresearch.models.research import FindingStatus, ResearchBudget, ResearchFinding

FALLBACK_MARKER = "fallback synthesis"
LOW_CONFIDENCE = 0.35
WARNING_PENALTY = 0.12


@dataclass
class QualityAssessment:
    score: float
    warnings: list[str] = field(default_factory=list)
    fallback_finding_count: int = 0
    unknown_finding_count: int = 0
    sourced_finding_count: int = 0
    multi_source_finding_count: int = 0
    answered_sub_question_count: int = 0


def is_fallback_finding(finding: ResearchFinding) -> bool:
    return FALLBACK_MARKER in (finding.notes or "").lower()


def assess_run_quality(
    findings: list[ResearchFinding],
    *,
    source_count: int,
    total_sub_questions: int,
    budget: ResearchBudget,
) -> QualityAssessment:
    """Score a finished run and list the reasons it falls short.

    The score is advisory: it never changes the run outcome beyond the
    warnings it reports.
    """
    fallback_count = sum(1 for f in findings if is_fallback_finding(f))
    unknown_count = sum(
        1 for f in findings if f.status == FindingStatus.UNKNOWN or f.confidence < LOW_CONFIDENCE
    )
    sourced = [f for f in findings if f.supporting_source_ids]
    multi_source_count = sum(1 for f in sourced if len(f.supporting_source_ids) >= 2)
    answered = len({f.sub_question for f in sourced if f.status != FindingStatus.UNKNOWN})

    warnings: list[str] = []
    min_expected_sources = max(3, min(budget.min_sources, 6))
    if source_count < min_expected_sources:
        warnings.append(
            f"Only {source_count} sources were collected; expected at least "
            f"{min_expected_sources} for this effort level."
        )

    min_answered = max(2, math.ceil(total_sub_questions * 0.5))
    if answered < min_answered:
        warnings.append(
            f"Only {answered}/{total_sub_questions} sub-questions were answered with cited evidence."
        )

    if multi_source_count == 0 and sourced:
        warnings.append("No findings were corroborated by at least two independent sources.")

    if fallback_count > 0:
        warnings.append(
            f"{fallback_count} finding(s) used synthesis fallback due to model output errors."
        )

    unknown_ratio = unknown_count / len(findings) if findings else 1.0
    if findings and unknown_ratio > 0.5:
        warnings.append("More than half of findings remained unknown or low-confidence.")

    coverage = answered / total_sub_questions if total_sub_questions > 0 else 0.0
    corroboration = multi_source_count / len(sourced) if sourced else 0.0
    source_ratio = min(1.0, source_count / max(budget.min_sources, 1))
    raw_score = (
        0.45 * coverage
        + 0.25 * corroboration
        + 0.2 * (1 - unknown_ratio)
        + 0.1 * source_ratio
        - min(1.0, len(warnings) * WARNING_PENALTY)
    )

    return QualityAssessment(
        score=min(1.0, max(0.0, raw_score)),
        warnings=warnings,
        fallback_finding_count=fallback_count,
        unknown_finding_count=unknown_count,
        sourced_finding_count=len(sourced),
        multi_source_finding_count=multi_source_count,
        answered_sub_question_count=answered,
    )

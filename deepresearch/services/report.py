"""Deterministic markdown renderings of a finished research run."""
from __future__ import annotations

from typing import Optional

from deepresearch.models.research import ReportAction, ResearchFinding, ResearchSource
from deepresearch.tools.web_utils import collapse_whitespace

HIGH_CONFIDENCE = 0.75
REPORT_EXCERPT_CHARS = 220
CHAT_EXCERPT_CHARS = 180


def summarize_findings(findings: list[ResearchFinding]) -> str:
    if not findings:
        return "Research run completed with limited evidence; additional sources are recommended."
    high = sum(1 for f in findings if f.confidence >= HIGH_CONFIDENCE)
    return f"Completed research with {len(findings)} findings ({high} high-confidence)."


def caveated_summary(warning_count: int) -> str:
    return (
        "Research run completed with caveats. "
        f"Quality checks produced {warning_count} warning(s)."
    )


def dedupe_actions(actions: list[ReportAction]) -> list[ReportAction]:
    """Keep the first action per case-insensitive title."""
    seen: set[str] = set()
    deduped: list[ReportAction] = []
    for action in actions:
        key = action.title.strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        deduped.append(action)
    return deduped


def _action_line(index: int, action: ReportAction) -> str:
    suffix = f" - {action.description}" if action.description else ""
    return f"{index}. {action.title}{suffix}"


def _finding_block(index: int, finding: ResearchFinding) -> str:
    citations = (
        ", ".join(f"[{source_id}]" for source_id in finding.supporting_source_ids)
        if finding.supporting_source_ids
        else "No citations"
    )
    lines = [
        f"{index}. **{finding.sub_question}**",
        f"   - Claim: {finding.claim}",
        f"   - Confidence: {finding.confidence:.2f} ({finding.status})",
        f"   - Citations: {citations}",
    ]
    for evidence in finding.evidence[:2]:
        excerpt = collapse_whitespace(evidence.excerpt or "") or "No excerpt captured."
        lines.append(f'   - Evidence [{evidence.source_id}]: "{excerpt[:REPORT_EXCERPT_CHARS]}"')
    if finding.notes:
        lines.append(f"   - Notes: {finding.notes}")
    return "\n".join(lines)


def build_report_markdown(
    *,
    summary: str,
    findings: list[ResearchFinding],
    unknowns: list[str],
    actions: list[ReportAction],
    sources: list[ResearchSource],
    quality_warnings: Optional[list[str]] = None,
    analyst_narrative: Optional[str] = None,
) -> str:
    sections: list[str] = ["## Executive summary", summary, ""]

    if quality_warnings:
        sections.append("## Quality warnings")
        sections.extend(f"{i}. {warning}" for i, warning in enumerate(quality_warnings, start=1))
        sections.append("")

    if analyst_narrative:
        sections.extend(["## Analyst synthesis", analyst_narrative, ""])

    sections.append("## Findings")
    if findings:
        sections.append("\n\n".join(_finding_block(i, f) for i, f in enumerate(findings, start=1)))
    else:
        sections.append("No findings were generated.")
    sections.append("")

    sections.append("## Unknowns / evidence gaps")
    if unknowns:
        sections.extend(f"{i}. {unknown}" for i, unknown in enumerate(unknowns, start=1))
    else:
        sections.append("No explicit unknowns recorded.")
    sections.append("")

    sections.append("## Suggested next actions")
    if actions:
        sections.extend(_action_line(i, action) for i, action in enumerate(actions, start=1))
    else:
        sections.append("No suggested actions.")
    sections.append("")

    sections.append("## Source list")
    if sources:
        sections.extend(f"- [{s.id}] [{s.title or s.url}]({s.url})" for s in sources)
    else:
        sections.append("No sources collected.")

    return "\n".join(sections)


def build_chat_report_message(
    *,
    query: str,
    summary: str,
    findings: list[ResearchFinding],
    unknowns: list[str],
    actions: list[ReportAction],
    sources: list[ResearchSource],
    quality_warnings: Optional[list[str]] = None,
    analyst_narrative: Optional[str] = None,
) -> str:
    """Condensed digest posted to the conversation when no presentation is available."""
    source_by_id = {source.id: source for source in sources}

    finding_lines: list[str] = []
    for index, finding in enumerate(findings[:4], start=1):
        citations = []
        for source_id in finding.supporting_source_ids[:3]:
            source = source_by_id.get(source_id)
            if source is None:
                citations.append(f"[{source_id}]")
            else:
                citations.append(f"[{source.domain or source.title or source_id}]({source.url})")
        excerpts = [
            f'"{collapse_whitespace(item.excerpt)[:CHAT_EXCERPT_CHARS]}"'
            for item in finding.evidence[:1]
            if item.excerpt and collapse_whitespace(item.excerpt)
        ]
        finding_lines.append(f"{index}. {finding.claim}")
        finding_lines.append(f"   - Confidence: {round(finding.confidence * 100)}% ({finding.status})")
        if citations:
            finding_lines.append(f"   - Sources: {', '.join(citations)}")
        if excerpts:
            finding_lines.append(f"   - Evidence: {' '.join(excerpts)}")

    lines: list[str] = ["Deep research has finished.", "", f"**Query:** {query}", ""]
    if quality_warnings:
        lines.append("### Quality warnings")
        lines.extend(f"- {warning}" for warning in quality_warnings)
        lines.append("")
    lines.extend(["### Summary", summary, ""])
    if analyst_narrative:
        lines.extend(["### Analyst report", analyst_narrative, ""])

    lines.append("### Key findings")
    lines.extend(finding_lines or ["No strong findings were produced."])
    lines.append("")

    lines.append("### Unknowns / gaps")
    lines.extend([f"- {u}" for u in unknowns[:3]] or ["- No explicit unknowns were captured."])
    lines.append("")

    lines.append("### Suggested next actions")
    lines.extend(
        [_action_line(i, a) for i, a in enumerate(actions[:4], start=1)]
        or ["No follow-up actions suggested."]
    )
    lines.append("")

    lines.append("### Traceable sources")
    lines.extend(
        [f"{i}. [{s.domain or s.title or s.url}]({s.url})" for i, s in enumerate(sources[:8], start=1)]
        or ["No sources collected."]
    )
    lines.append("")
    lines.append(
        "Reply with your preferences and constraints, and I can refine this into specific recommendations."
    )
    return "\n".join(lines)

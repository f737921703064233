from __future__ import annotations

from conftest import make_finding, make_source

from deepresearch.models.research import ReportAction
from deepresearch.services import report


def test_summaries():
    assert report.summarize_findings([]).startswith("Research run completed with limited evidence")
    findings = [make_finding("r", confidence=0.9), make_finding("r", confidence=0.5)]
    assert report.summarize_findings(findings) == "Completed research with 2 findings (1 high-confidence)."
    assert report.caveated_summary(3) == (
        "Research run completed with caveats. Quality checks produced 3 warning(s)."
    )


def test_dedupe_actions_by_case_insensitive_title():
    actions = [
        ReportAction(title="Call an installer", description="first"),
        ReportAction(title="  call AN installer ", description="second"),
        ReportAction(title=""),
        ReportAction(title="Compare quotes"),
    ]
    deduped = report.dedupe_actions(actions)
    assert [(a.title, a.description) for a in deduped] == [
        ("Call an installer", "first"),
        ("Compare quotes", ""),
    ]


def test_report_markdown_sections_and_citations():
    source = make_source("r", "https://www.energy.gov/heat-pumps", title="DOE guide")
    finding = make_finding("r", source_ids=[source.id], notes="Checked against DOE data.")
    markdown = report.build_report_markdown(
        summary="Heat pumps work in the cold.",
        findings=[finding],
        unknowns=["Long-term maintenance costs"],
        actions=[ReportAction(title="Get quotes", description="Ask three installers")],
        sources=[source],
        quality_warnings=["Only 1 sources were collected; expected at least 4 for this effort level."],
        analyst_narrative="Narrative text.",
    )

    assert markdown.startswith("## Executive summary\nHeat pumps work in the cold.")
    assert "## Quality warnings\n1. Only 1 sources" in markdown
    assert "## Analyst synthesis\nNarrative text." in markdown
    assert f"   - Citations: [{source.id}]" in markdown
    assert f'   - Evidence [{source.id}]: "Cold climate heat pumps' in markdown
    assert "   - Notes: Checked against DOE data." in markdown
    assert "1. Get quotes - Ask three installers" in markdown
    assert f"- [{source.id}] [DOE guide](https://www.energy.gov/heat-pumps)" in markdown


def test_report_markdown_empty_sections():
    markdown = report.build_report_markdown(summary="s", findings=[], unknowns=[], actions=[], sources=[])
    assert "No findings were generated." in markdown
    assert "No explicit unknowns recorded." in markdown
    assert "No suggested actions." in markdown
    assert "No sources collected." in markdown
    assert "## Quality warnings" not in markdown


def test_report_markdown_finding_without_citations():
    finding = make_finding("r", source_ids=[])
    markdown = report.build_report_markdown(summary="s", findings=[finding], unknowns=[], actions=[], sources=[])
    assert "   - Citations: No citations" in markdown


def test_chat_message_links_sources_by_domain():
    source = make_source("r", "https://www.energy.gov/heat-pumps", title="DOE guide")
    finding = make_finding("r", source_ids=[source.id, "missing"], confidence=0.81)
    message = report.build_chat_report_message(
        query="heat pumps in the cold",
        summary="Summary line",
        findings=[finding],
        unknowns=[],
        actions=[],
        sources=[source],
    )
    assert message.startswith("Deep research has finished.")
    assert "**Query:** heat pumps in the cold" in message
    assert "   - Confidence: 81% (sufficient)" in message
    assert "[energy.gov](https://www.energy.gov/heat-pumps), [missing]" in message
    assert "- No explicit unknowns were captured." in message
    assert "No follow-up actions suggested." in message

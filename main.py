"""Deep Research - command line runner

Plans a query, approves the plan as generated, executes it against the
in-memory store and prints the final report.
"""

import argparse
import asyncio

from deepresearch.models.research import Effort
from deepresearch.services.durable import DurableTaskRunner
from deepresearch.services.research_service import ResearchService
from deepresearch.services.store import InMemoryResearchStore

CLI_HOUSEHOLD_ID = "local-household"
CLI_USER_ID = "local-user"


async def run_research(query: str, effort: str, recency_days: int | None):
    """Run research on the given query."""
    print(f"Research query: {query}")
    print("-" * 50)

    store = InMemoryResearchStore()
    runner = DurableTaskRunner()
    service = ResearchService(store=store, runner=runner)
    conversation_id = store.add_conversation(CLI_HOUSEHOLD_ID, title=query[:100])

    planned = await service.create_plan(
        conversation_id=conversation_id,
        household_id=CLI_HOUSEHOLD_ID,
        user_id=CLI_USER_ID,
        query=query,
        effort=effort,
        recency_days=recency_days,
    )
    print(f"\n[*] Research Plan ({planned.planner_status}):")
    print(f"  Objective: {planned.plan.objective}")
    for i, sub_question in enumerate(planned.plan.sub_questions, 1):
        print(f"  {i}. {sub_question}")
    if planned.planner_reason:
        print(f"  Note: {planned.planner_reason}")

    await service.start_run(
        conversation_id=conversation_id,
        run_id=planned.run_id,
        household_id=CLI_HOUSEHOLD_ID,
        user_id=CLI_USER_ID,
        plan=planned.plan,
    )
    print("\n[~] Researching...")
    await runner.wait(planned.run_id)

    snapshot = await service.get_run_status(
        conversation_id=conversation_id,
        run_id=planned.run_id,
        household_id=CLI_HOUSEHOLD_ID,
    )
    run = snapshot.run
    print(f"\n[*] Research {run.status.value}")
    print(f"   Sources: {len(snapshot.sources)}")
    print(f"   Findings: {len(snapshot.findings)}")
    if run.quality_score is not None:
        print(f"   Quality: {run.quality_score:.2f}")
    if run.error:
        print(f"\n[!] Error: {run.error}")
        return

    if snapshot.report:
        print(f"\n{'='*50}")
        print("REPORT:")
        print(f"{'='*50}")
        print(snapshot.report.report_markdown)


def main():
    parser = argparse.ArgumentParser(description="Deep Research Tool")
    parser.add_argument("--query", "-q", required=True, help="Research query")
    parser.add_argument(
        "--effort",
        "-e",
        choices=[e.value for e in Effort],
        default=Effort.STANDARD.value,
        help="Research effort (default: standard)",
    )
    parser.add_argument("--recency-days", "-r", type=int, help="Prefer sources from the last N days")

    args = parser.parse_args()

    asyncio.run(run_research(args.query, args.effort, args.recency_days))


if __name__ == "__main__":
    main()

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from deepresearch.api.deps import Caller, get_caller, get_service
from deepresearch.models.schemas import (
    BudgetResponse,
    EventResponse,
    FindingResponse,
    PlannerInfo,
    PlanRequest,
    PlanResponse,
    ReportResponse,
    RunListResponse,
    RunResponse,
    RunStatusResponse,
    SourceResponse,
    StartRequest,
    StartResponse,
    TasksRequest,
    TasksResponse,
)
from deepresearch.services.research_service import (
    ActionItemInput,
    ResearchNotFoundError,
    ResearchService,
)

router = APIRouter(prefix="/api/conversations/{conversation_id}/research", tags=["research"])


@router.post("/plan", response_model=PlanResponse)
async def create_plan(
    conversation_id: str,
    request: PlanRequest,
    caller: Caller = Depends(get_caller),
    service: ResearchService = Depends(get_service),
):
    """Generate a plan for approval; the run stays in ``planning`` until started."""
    try:
        result = await service.create_plan(
            conversation_id=conversation_id,
            household_id=caller.household_id,
            user_id=caller.user_id,
            query=request.query,
            effort=request.effort,
            recency_days=request.recency_days,
        )
    except ResearchNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    return PlanResponse(
        run_id=result.run_id,
        plan=result.plan,
        budget=BudgetResponse.from_budget(result.budget),
        planner=PlannerInfo(status=result.planner_status, reason=result.planner_reason),
    )


@router.post("/{run_id}/start", response_model=StartResponse, status_code=202)
async def start_run(
    conversation_id: str,
    run_id: str,
    request: StartRequest,
    caller: Caller = Depends(get_caller),
    service: ResearchService = Depends(get_service),
):
    try:
        outcome = await service.start_run(
            conversation_id=conversation_id,
            run_id=run_id,
            household_id=caller.household_id,
            user_id=caller.user_id,
            plan=request.plan,
        )
    except ResearchNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return StartResponse(run_id=run_id, status=outcome.value)


@router.get("/{run_id}", response_model=RunStatusResponse)
async def get_run_status(
    conversation_id: str,
    run_id: str,
    caller: Caller = Depends(get_caller),
    service: ResearchService = Depends(get_service),
):
    try:
        snapshot = await service.get_run_status(
            conversation_id=conversation_id,
            run_id=run_id,
            household_id=caller.household_id,
        )
    except ResearchNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    return RunStatusResponse(
        run=RunResponse.from_run(snapshot.run),
        budget=BudgetResponse.from_budget(snapshot.budget),
        sources=[SourceResponse.from_source(s) for s in snapshot.sources],
        findings=[FindingResponse.from_finding(f) for f in snapshot.findings],
        report=ReportResponse.from_report(snapshot.report) if snapshot.report else None,
        events=[EventResponse.from_event(e) for e in snapshot.events],
    )


@router.get("", response_model=RunListResponse)
async def list_runs(
    conversation_id: str,
    caller: Caller = Depends(get_caller),
    service: ResearchService = Depends(get_service),
):
    runs = await service.list_runs_for_conversation(
        conversation_id=conversation_id,
        household_id=caller.household_id,
    )
    return RunListResponse(runs=[RunResponse.from_run(run) for run in runs])


@router.post("/{run_id}/tasks", response_model=TasksResponse)
async def create_tasks(
    conversation_id: str,
    run_id: str,
    request: TasksRequest,
    caller: Caller = Depends(get_caller),
    service: ResearchService = Depends(get_service),
):
    try:
        result = await service.create_tasks_from_run(
            conversation_id=conversation_id,
            run_id=run_id,
            household_id=caller.household_id,
            user_id=caller.user_id,
            finding_ids=request.finding_ids,
            action_items=[
                ActionItemInput(
                    title=item.title,
                    description=item.description,
                    due_date=item.due_date,
                    assigned_to_id=item.assigned_to_id,
                    priority=item.priority,
                )
                for item in request.action_items
            ],
        )
    except ResearchNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return TasksResponse(created_task_ids=result.created_task_ids)

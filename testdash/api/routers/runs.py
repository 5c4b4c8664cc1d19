from __future__ import annotations

from datetime import datetime
from typing import Any, AsyncGenerator, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field

from ..dependencies import get_controller
from ..events import TERMINAL_EVENTS, EventType, build_event
from ..sse import sse_response
from ...core.run_record import RunRecord
from ...services.run_controller import RunController, RunNotFoundError, RunNotRunningError


router = APIRouter(prefix="/api/runs", tags=["runs"])


class CreateRunRequest(BaseModel):
    subjectName: str = Field(..., description="Project (or other owner) the run belongs to.")
    command: str = Field(..., description="Executable plus fixed leading arguments, e.g. 'npx playwright'.")
    args: List[str] = Field(default_factory=list)
    environment: Dict[str, Optional[str]] = Field(
        default_factory=dict,
        description="Overrides on top of the inherited environment; null unsets a variable.",
    )
    context: Optional[str] = Field(None, description="Environment/configuration label, e.g. 'staging'.")
    workingDirectory: Optional[str] = None


class RunResponse(BaseModel):
    runId: str
    run: Dict[str, Any]


class RunListResponse(BaseModel):
    runs: List[Dict[str, Any]]
    total: int


class ClearRunsResponse(BaseModel):
    clearedCount: int
    message: str


def _get_or_404(controller: RunController, run_id: str) -> RunRecord:
    try:
        return controller.query(run_id)
    except RunNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def _search(
    controller: RunController,
    q: Optional[str],
    status: Optional[str],
    subject: Optional[str],
    started_after: Optional[datetime],
    started_before: Optional[datetime],
    limit: int,
) -> RunListResponse:
    try:
        records = controller.search(
            q,
            status=status,
            subject_name=subject,
            started_after=started_after,
            started_before=started_before,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid filter: {exc}") from exc
    return RunListResponse(runs=[r.to_dict() for r in records[:limit]], total=len(records))


@router.post("", response_model=RunResponse, status_code=202)
async def create_run(
    req: CreateRunRequest,
    response: Response,
    wait: bool = Query(False, description="Block until the run reaches a terminal state."),
    controller: RunController = Depends(get_controller),
) -> RunResponse:
    record = controller.start_run(
        req.subjectName,
        req.command,
        req.args,
        environment=req.environment,
        context=req.context,
        working_directory=req.workingDirectory,
    )
    if wait:
        await controller.wait(record.id)
        response.status_code = 200
    return RunResponse(runId=record.id, run=record.to_dict())


@router.get("", response_model=RunListResponse)
async def list_runs(
    status: Optional[str] = None,
    subject: Optional[str] = None,
    startedAfter: Optional[datetime] = None,
    startedBefore: Optional[datetime] = None,
    limit: int = Query(50, ge=1),
    controller: RunController = Depends(get_controller),
) -> RunListResponse:
    return _search(controller, None, status, subject, startedAfter, startedBefore, limit)


@router.get("/search", response_model=RunListResponse)
async def search_runs(
    q: Optional[str] = None,
    status: Optional[str] = None,
    subject: Optional[str] = None,
    startedAfter: Optional[datetime] = None,
    startedBefore: Optional[datetime] = None,
    limit: int = Query(50, ge=1),
    controller: RunController = Depends(get_controller),
) -> RunListResponse:
    return _search(controller, q, status, subject, startedAfter, startedBefore, limit)


@router.get("/active", response_model=RunListResponse)
async def active_runs(controller: RunController = Depends(get_controller)) -> RunListResponse:
    records = controller.list_active()
    return RunListResponse(runs=[r.to_dict() for r in records], total=len(records))


@router.get("/history", response_model=RunListResponse)
async def run_history(
    limit: int = Query(50, ge=1),
    controller: RunController = Depends(get_controller),
) -> RunListResponse:
    records = controller.history(limit)
    return RunListResponse(runs=[r.to_dict() for r in records], total=len(records))


@router.delete("", response_model=ClearRunsResponse)
async def clear_runs(
    olderThan: Optional[datetime] = None,
    controller: RunController = Depends(get_controller),
) -> ClearRunsResponse:
    cleared = controller.clear(olderThan)
    if olderThan is None:
        message = "All command logs cleared"
    else:
        message = f"Cleared {cleared} command logs older than {olderThan.isoformat()}"
    return ClearRunsResponse(clearedCount=cleared, message=message)


@router.get("/{run_id}", response_model=RunResponse)
async def get_run(run_id: str, controller: RunController = Depends(get_controller)) -> RunResponse:
    record = _get_or_404(controller, run_id)
    return RunResponse(runId=record.id, run=record.to_dict())


@router.post("/{run_id}/cancel", response_model=RunResponse)
async def cancel_run(run_id: str, controller: RunController = Depends(get_controller)) -> RunResponse:
    try:
        record = controller.cancel(run_id)
    except RunNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except RunNotRunningError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return RunResponse(runId=record.id, run=record.to_dict())


@router.get("/{run_id}/stream")
async def stream_run(run_id: str, controller: RunController = Depends(get_controller)):
    _get_or_404(controller, run_id)

    async def gen() -> AsyncGenerator[Dict[str, Any], None]:
        # Subscribe and snapshot in one step so no event slips between them.
        subscription = controller.broadcaster.subscribe()
        try:
            record = controller.registry.get(run_id)
            if record is None:
                return
            yield build_event(EventType.RUN_SNAPSHOT, run_id, record.to_dict())
            if record.is_terminal:
                return
            while True:
                event = await subscription.get()
                if event is None:
                    break
                if event.get("runId") != run_id:
                    continue
                yield event
                if event["type"] in TERMINAL_EVENTS:
                    break
        finally:
            controller.broadcaster.unsubscribe(subscription)

    return sse_response(gen())

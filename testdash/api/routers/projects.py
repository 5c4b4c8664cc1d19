from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field

from ..dependencies import get_controller, get_settings
from .runs import RunResponse
from ...config import MonitorSettings
from ...services.playwright_args import build_playwright_invocation
from ...services.run_controller import RunController


router = APIRouter(prefix="/api/projects", tags=["projects"])


class RunTestsRequest(BaseModel):
    selectedTestFiles: List[str] = Field(default_factory=list, description="Spec files under the project's tests/ folder.")
    websiteUrl: Optional[str] = Field(None, description="Base URL the tests run against.")
    username: Optional[str] = None
    password: Optional[str] = None
    environment: str = Field("local", description="Environment preset label recorded as the run context.")
    testExecutionOrder: List[str] = Field(
        default_factory=list,
        description="Optional ordered 'file:test name' entries; each becomes a --grep filter.",
    )
    runWithUI: bool = Field(False, description="Run headed with a single worker.")


def _resolve_project_dir(projects_root: Path, project_name: str) -> Path:
    root = projects_root.resolve()
    candidate = (root / project_name).resolve()
    # Ensure within projects root
    if os.path.commonpath([str(root), str(candidate)]) != str(root) or candidate == root:
        raise HTTPException(status_code=400, detail="Project name must refer to a folder inside the projects root")
    if not candidate.is_dir():
        raise HTTPException(status_code=404, detail=f'Project "{project_name}" does not exist')
    return candidate


@router.post("/{project_name}/run-tests", response_model=RunResponse, status_code=202)
async def run_tests(
    project_name: str,
    req: RunTestsRequest,
    response: Response,
    wait: bool = Query(False, description="Block until the run reaches a terminal state."),
    controller: RunController = Depends(get_controller),
    settings: MonitorSettings = Depends(get_settings),
) -> RunResponse:
    project_dir = _resolve_project_dir(settings.projects_root, project_name)
    try:
        invocation = build_playwright_invocation(
            req.selectedTestFiles,
            req.websiteUrl,
            username=req.username,
            password=req.password,
            execution_order=req.testExecutionOrder,
            headed=req.runWithUI,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    record = controller.start_run(
        project_name,
        invocation.command,
        invocation.args,
        environment=invocation.environment,
        context=req.environment,
        working_directory=str(project_dir),
    )
    if wait:
        await controller.wait(record.id)
        response.status_code = 200
    return RunResponse(runId=record.id, run=record.to_dict())

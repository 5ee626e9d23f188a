import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi.responses import JSONResponse

from codebase_testing_agent.api.dependencies import (
    get_arq_pool,
    get_orchestrator,
    http_error,
)
from codebase_testing_agent.schemas.analysis import AnalysisRead
from codebase_testing_agent.schemas.project import ProjectCreate, ProjectRead
from codebase_testing_agent.schemas.testcase import (
    ScriptGenerationRequest,
    TestCaseRead,
    TestGenerationRequest,
)
from codebase_testing_agent.schemas.workflow import (
    ProjectReport,
    ProjectStats,
    StageResult,
    WorkflowSnapshot,
)
from codebase_testing_agent.services.errors import OrchestratorError
from codebase_testing_agent.services.orchestrator import Orchestrator
from codebase_testing_agent.storage.models import AnalysisKind

router = APIRouter()
logger = logging.getLogger(__name__)


async def _trigger(
    orchestrator: Orchestrator,
    arq_pool: Optional[Any],
    project_id: int,
    stage: str,
    options: Dict[str, Any],
    background: bool,
):
    """Run a stage inline, or enqueue it for the arq worker and answer 202."""
    try:
        if not background:
            return await orchestrator.run_stage(project_id, stage, options)

        snapshot = await orchestrator.preflight(project_id, stage, options)
    except OrchestratorError as exc:
        raise http_error(exc) from exc

    if arq_pool is None:
        raise HTTPException(status_code=503, detail="Background queue unavailable")
    job = await arq_pool.enqueue_job("run_stage_task", project_id, stage, options)
    logger.info(
        "Queued stage %s for project %s (job=%s)",
        stage,
        project_id,
        getattr(job, "job_id", None),
    )
    result = StageResult(
        project_id=project_id,
        stage=stage,
        status="queued",
        state=snapshot,
        message="queued",
    )
    return JSONResponse(status_code=202, content=result.model_dump(mode="json"))


@router.get("/", response_model=List[ProjectRead])
async def list_projects(orchestrator: Orchestrator = Depends(get_orchestrator)):
    return await orchestrator.list_projects()


@router.post("/", response_model=StageResult, status_code=201)
async def create_project(
    payload: ProjectCreate, orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """
    Register a project. It becomes the active project at stage Created.
    """
    return await orchestrator.create_project(payload)


@router.get("/active", response_model=Optional[WorkflowSnapshot])
async def get_active_project(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Workflow state of the active project; 204 when there is none."""
    snapshot = await orchestrator.get_active_project()
    if snapshot is None:
        return Response(status_code=204)
    return snapshot


@router.get("/{project_id}", response_model=ProjectRead)
async def get_project(
    project_id: int, orchestrator: Orchestrator = Depends(get_orchestrator)
):
    try:
        return await orchestrator.get_project(project_id)
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@router.get("/{project_id}/workflow", response_model=WorkflowSnapshot)
async def get_workflow_state(
    project_id: int, orchestrator: Orchestrator = Depends(get_orchestrator)
):
    try:
        return await orchestrator.get_workflow_state(project_id)
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@router.post("/{project_id}/analysis", response_model=StageResult)
async def start_analysis(
    project_id: int,
    background: bool = False,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    arq_pool: Optional[Any] = Depends(get_arq_pool),
):
    return await _trigger(
        orchestrator, arq_pool, project_id, "start_analysis", {}, background
    )


@router.post("/{project_id}/tests", response_model=StageResult)
async def generate_tests(
    project_id: int,
    payload: Optional[TestGenerationRequest] = None,
    background: bool = False,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    arq_pool: Optional[Any] = Depends(get_arq_pool),
):
    """
    Generate test cases for the selected categories. Requires a completed analysis.
    """
    payload = payload or TestGenerationRequest()
    return await _trigger(
        orchestrator,
        arq_pool,
        project_id,
        "generate_tests",
        payload.model_dump(),
        background,
    )


@router.post("/{project_id}/scripts", response_model=StageResult)
async def generate_scripts(
    project_id: int,
    payload: Optional[ScriptGenerationRequest] = None,
    background: bool = False,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    arq_pool: Optional[Any] = Depends(get_arq_pool),
):
    payload = payload or ScriptGenerationRequest()
    return await _trigger(
        orchestrator,
        arq_pool,
        project_id,
        "generate_scripts",
        payload.model_dump(),
        background,
    )


@router.post("/{project_id}/runs", response_model=StageResult)
async def run_tests(
    project_id: int,
    background: bool = False,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    arq_pool: Optional[Any] = Depends(get_arq_pool),
):
    return await _trigger(orchestrator, arq_pool, project_id, "run_tests", {}, background)


@router.post("/{project_id}/cancel")
async def cancel_stage(
    project_id: int, orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """
    Cancel the running stage of the project, if any. ``cancelled`` counts the
    sub-tasks stopped in this process; ``requested`` is true when a running
    stage was flagged, which also reaches stages run by the arq worker.
    """
    try:
        cancelled, requested = await orchestrator.cancel_stage(project_id)
    except OrchestratorError as exc:
        raise http_error(exc) from exc
    return {"project_id": project_id, "cancelled": cancelled, "requested": requested}


@router.post("/{project_id}/reset", response_model=WorkflowSnapshot)
async def reset_project(
    project_id: int, orchestrator: Orchestrator = Depends(get_orchestrator)
):
    """
    Clear the workflow flags and the active pointer so a new project can start.
    """
    try:
        return await orchestrator.reset_project(project_id)
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@router.get("/{project_id}/stats", response_model=ProjectStats)
async def get_stats(
    project_id: int, orchestrator: Orchestrator = Depends(get_orchestrator)
):
    try:
        return await orchestrator.get_stats(project_id)
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@router.get("/{project_id}/report", response_model=ProjectReport)
async def get_report(
    project_id: int, orchestrator: Orchestrator = Depends(get_orchestrator)
):
    try:
        return await orchestrator.get_report(project_id)
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@router.get("/{project_id}/analyses", response_model=List[AnalysisRead])
async def list_analyses(
    project_id: int,
    kind: Optional[AnalysisKind] = None,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.list_analyses(project_id, kind)
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@router.get("/{project_id}/testcases", response_model=List[TestCaseRead])
async def list_test_cases(
    project_id: int, orchestrator: Orchestrator = Depends(get_orchestrator)
):
    try:
        return await orchestrator.list_test_cases(project_id)
    except OrchestratorError as exc:
        raise http_error(exc) from exc

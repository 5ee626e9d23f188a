import logging
from typing import Any, List

from fastapi import APIRouter, Body, Depends, Query

from codebase_testing_agent.api.dependencies import get_orchestrator, http_error
from codebase_testing_agent.schemas.testcase import (
    EstimateRead,
    OutcomeBatchResult,
    OutcomeIn,
    OutcomeResult,
    TestCaseRead,
)
from codebase_testing_agent.services.errors import OrchestratorError
from codebase_testing_agent.services.orchestrator import Orchestrator

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/estimate", response_model=EstimateRead)
async def estimate_test_count(
    categories: List[str] = Query(default=["functional"]),
    complexity: str = "standard",
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """
    Rough size of a generation run for the given categories. Display hint only.
    """
    try:
        count = orchestrator.estimate_test_count(categories, complexity)
    except OrchestratorError as exc:
        raise http_error(exc) from exc
    return EstimateRead(
        categories=categories, complexity=complexity, estimated_count=count
    )


@router.post("/outcomes", response_model=OutcomeBatchResult)
async def record_outcomes(
    outcomes: Any = Body(...),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """
    Record a batch of externally reported execution outcomes. Malformed
    entries and unknown test cases are counted as dropped, stale ones as
    discarded.
    """
    return await orchestrator.record_outcomes(outcomes)


@router.get("/{case_id}", response_model=TestCaseRead)
async def get_test_case(
    case_id: int, orchestrator: Orchestrator = Depends(get_orchestrator)
):
    try:
        return await orchestrator.get_test_case(case_id)
    except OrchestratorError as exc:
        raise http_error(exc) from exc


@router.post("/{case_id}/outcome", response_model=OutcomeResult)
async def record_outcome(
    case_id: int,
    outcome: OutcomeIn,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """
    Apply an execution outcome to one test case. Outcomes reported at or
    before the last applied one are ignored (``applied`` is false).
    """
    try:
        applied, case = await orchestrator.record_outcome(case_id, outcome)
    except OrchestratorError as exc:
        raise http_error(exc) from exc
    return OutcomeResult(applied=applied, test_case=TestCaseRead.model_validate(case))

import logging
from typing import Any, Optional

from fastapi import HTTPException, Request

from codebase_testing_agent.services.errors import (
    OrchestratorError,
    ProjectNotFound,
    StageCancelled,
    StageFailure,
    StageInProgress,
    StagePrecondition,
    TestCaseNotFound,
    ValidationError,
    WorkflowConflict,
)
from codebase_testing_agent.services.orchestrator import (
    Orchestrator,
    get_orchestrator as _get_orchestrator,
)

logger = logging.getLogger(__name__)

STATUS_BY_ERROR = (
    (ProjectNotFound, 404),
    (TestCaseNotFound, 404),
    (StagePrecondition, 409),
    (StageInProgress, 409),
    (StageCancelled, 409),
    (WorkflowConflict, 409),
    (StageFailure, 502),
    (ValidationError, 422),
)


def get_orchestrator() -> Orchestrator:
    """Dependency returning the process-wide orchestrator."""
    return _get_orchestrator()


def get_arq_pool(request: Request) -> Optional[Any]:
    """The arq pool created by the app lifespan, or None when Redis is down."""
    return getattr(request.app.state, "arq_pool", None)


def http_error(exc: OrchestratorError) -> HTTPException:
    """Translate an orchestration error into the matching HTTP error."""
    status_code = 500
    for error_cls, code in STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            status_code = code
            break

    detail: Any = str(exc)
    if isinstance(exc, StageFailure):
        detail = {"message": str(exc), "issues": exc.issues}
    elif isinstance(exc, StagePrecondition):
        detail = {"message": str(exc), "missing": exc.missing_flag}

    if status_code >= 500:
        logger.warning("Request failed with %s: %s", status_code, exc)
    else:
        logger.debug("Request rejected with %s: %s", status_code, exc)
    return HTTPException(status_code=status_code, detail=detail)

"""Error taxonomy shared by the orchestration services and the HTTP layer."""


class OrchestratorError(Exception):
    """Base class for every error raised by the orchestration core."""


class ValidationError(OrchestratorError):
    """An externally produced record or payload could not be used."""


class TransientError(OrchestratorError):
    """A failure that is worth retrying (timeouts, connection or 5xx errors)."""


class AgentTimeout(TransientError):
    def __init__(self, role: str, timeout: float):
        super().__init__(f"{role} agent did not answer within {timeout}s")
        self.role = role
        self.timeout = timeout


class AgentUnavailable(TransientError):
    """No agent of the requested role could be acquired."""

    def __init__(self, role: str):
        super().__init__(f"No {role} agent is available")
        self.role = role


class ProjectNotFound(OrchestratorError):
    def __init__(self, project_id: int):
        super().__init__(f"Project {project_id} not found")
        self.project_id = project_id


class TestCaseNotFound(OrchestratorError):
    __test__ = False

    def __init__(self, test_case_id: int):
        super().__init__(f"Test case {test_case_id} not found")
        self.test_case_id = test_case_id


class StagePrecondition(OrchestratorError):
    """A stage was triggered before its predecessor flag was set."""

    def __init__(self, stage: str, missing_flag: str):
        super().__init__(f"Cannot run {stage}: {missing_flag} is not set")
        self.stage = stage
        self.missing_flag = missing_flag


class StageInProgress(OrchestratorError):
    def __init__(self, project_id: int):
        super().__init__(f"A stage is already running for project {project_id}")
        self.project_id = project_id


class StageFailure(OrchestratorError):
    """Every sub-task of a stage failed."""

    def __init__(self, stage: str, issues: list | None = None):
        issues = issues or []
        super().__init__(f"Stage {stage} failed: {len(issues)} sub-task(s) failed")
        self.stage = stage
        self.issues = issues


class StageCancelled(OrchestratorError):
    def __init__(self, stage: str, project_id: int):
        super().__init__(f"Stage {stage} was cancelled for project {project_id}")
        self.stage = stage
        self.project_id = project_id


class WorkflowConflict(OrchestratorError):
    """A flag write found a predecessor cleared underneath it, e.g. by a reset."""

    def __init__(self, project_id: int, flag: str, missing_flag: str):
        super().__init__(
            f"Cannot set {flag} for project {project_id}: {missing_flag} is not set"
        )
        self.project_id = project_id
        self.flag = flag
        self.missing_flag = missing_flag

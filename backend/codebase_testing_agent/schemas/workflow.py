import enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from codebase_testing_agent.schemas.analysis import AnalysisRead
from codebase_testing_agent.schemas.project import ProjectRead
from codebase_testing_agent.schemas.testcase import TestCaseRead


class WorkflowStage(str, enum.Enum):
    CREATED = "created"
    ANALYZING = "analyzing"
    ANALYZED = "analyzed"
    TESTS_GENERATED = "tests_generated"
    SCRIPTS_GENERATED = "scripts_generated"
    TESTS_RUN = "tests_run"
    RESULTS_AVAILABLE = "results_available"


class WorkflowFlags(BaseModel):
    project_created: bool = False
    analysis_started: bool = False
    analysis_completed: bool = False
    tests_generated: bool = False
    scripts_generated: bool = False
    tests_run: bool = False

    model_config = ConfigDict(from_attributes=True)


class WorkflowSnapshot(BaseModel):
    """
    Derived workflow position of one project. ``version`` grows on every
    persisted change so callers can detect staleness without re-reading
    everything.
    """

    project_id: int
    stage: WorkflowStage
    flags: WorkflowFlags
    active: bool
    version: int
    analysis_status: str
    last_stage: Optional[Dict[str, Any]] = None
    running_stage: Optional[str] = None

    model_config = ConfigDict(use_enum_values=True)


class StageIssue(BaseModel):
    key: str
    role: str
    error: Optional[str] = None
    error_kind: Optional[str] = None
    attempts: int = 0


class StageResult(BaseModel):
    project_id: int
    stage: str
    status: Literal["succeeded", "unchanged", "queued"]
    state: WorkflowSnapshot
    succeeded: int = 0
    issues: List[StageIssue] = Field(default_factory=list)
    message: str = ""


class ProjectStats(BaseModel):
    total: int = 0
    passed: int = 0
    failed: int = 0
    running: int = 0
    pending: int = 0
    success_rate: int = 0
    version: int = 0


class ProjectReport(BaseModel):
    project: ProjectRead
    stage: WorkflowStage
    stats: ProjectStats
    analysis_progress: int = 0
    test_cases: List[TestCaseRead] = Field(default_factory=list)
    analyses: List[AnalysisRead] = Field(default_factory=list)
    version: int = 0

    model_config = ConfigDict(use_enum_values=True)

"""
Facade over the orchestration core: stage triggers, cancellation, reset and
the read models consumed by the HTTP layer and the arq worker.
"""

import logging
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Tuple

from codebase_testing_agent.schemas.project import ProjectCreate
from codebase_testing_agent.schemas.workflow import (
    ProjectReport,
    ProjectStats,
    StageResult,
    WorkflowSnapshot,
)
from codebase_testing_agent.services.agents.backend import LLMAgentBackend
from codebase_testing_agent.services.aggregator import ResultAggregator
from codebase_testing_agent.services.categories import (
    TestCategory,
    complexity_multiplier,
    estimate_test_count,
    resolve_categories,
    target_count,
)
from codebase_testing_agent.services.dispatcher import (
    DispatchOutcome,
    SubTask,
    SubTaskResult,
    SubTaskStatus,
    TaskDispatcher,
)
from codebase_testing_agent.services.errors import StageCancelled, StageInProgress
from codebase_testing_agent.services.ingestion import TestGenerationPayload
from codebase_testing_agent.services.registry import Agent, AgentRegistry
from codebase_testing_agent.services.workflow import STAGE_RULES, WorkflowStateMachine
from codebase_testing_agent.storage.database import AsyncSessionLocal
from codebase_testing_agent.storage.models import (
    AgentRole,
    Analysis,
    AnalysisKind,
    AnalysisStatus,
    Project,
    ProjectAnalysisStatus,
    TestCase,
    TestCaseStatus,
)
from codebase_testing_agent.storage.repository import ProjectStore, SqlProjectStore
from codebase_testing_agent.utils.config import settings

logger = logging.getLogger(__name__)

ANALYSIS_PLAN: Tuple[Tuple[AnalysisKind, AgentRole], ...] = (
    (AnalysisKind.CODE_ANALYSIS, AgentRole.ANALYZER),
    (AnalysisKind.ARCHITECTURE_REVIEW, AgentRole.ANALYZER),
    (AnalysisKind.RISK_ASSESSMENT, AgentRole.RISK),
)
ANALYSIS_KINDS = frozenset(kind for kind, _ in ANALYSIS_PLAN)

RECORD_STATUS = {
    SubTaskStatus.SUCCEEDED: AnalysisStatus.COMPLETED,
    SubTaskStatus.FAILED: AnalysisStatus.FAILED,
    SubTaskStatus.CANCELLED: AnalysisStatus.CANCELLED,
}


def _project_snapshot(project: Project) -> Dict[str, Any]:
    return {
        "id": project.id,
        "name": project.name,
        "description": project.description,
        "source_type": project.source_type,
        "source_url": project.source_url,
        "repository_data": project.repository_data,
    }


def _test_case_snapshot(case: TestCase) -> Dict[str, Any]:
    return {
        "id": case.id,
        "name": case.name,
        "description": case.description,
        "type": case.type,
        "priority": case.priority,
        "framework": case.framework,
        "category": case.category,
    }


def _result_payload(result: SubTaskResult) -> Dict[str, Any]:
    if result.payload is not None:
        return result.payload.model_dump(exclude={"kind"})
    if result.status is SubTaskStatus.CANCELLED:
        return {"cancelled": True}
    return {"error": result.error, "error_kind": result.error_kind}


class Orchestrator:
    def __init__(
        self,
        store: ProjectStore,
        registry: AgentRegistry,
        dispatcher: TaskDispatcher,
    ):
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher
        self.workflow = WorkflowStateMachine(store)
        self.aggregator = ResultAggregator(store)

    # ------------------------------------------------------------------
    # Stage triggers
    # ------------------------------------------------------------------

    async def create_project(self, data: ProjectCreate) -> StageResult:
        """Register a project; it becomes the active one and starts at Created."""
        project = Project(
            name=data.name,
            description=data.description,
            source_type=data.source_type,
            source_url=data.source_url,
            repository_data=data.repository_data,
            analysis_status=ProjectAnalysisStatus.PENDING,
        )
        project = await self.store.save_project(project)
        await self.store.create_workflow(project.id)
        logger.info("Created project %s (%s)", project.id, project.name)
        return StageResult(
            project_id=project.id,
            stage="create_project",
            status="succeeded",
            state=await self.workflow.snapshot(project.id),
            message="succeeded",
        )

    async def start_analysis(self, project_id: int) -> StageResult:
        try:
            return await self.workflow.run(
                project_id, "start_analysis", lambda: self._run_analysis(project_id)
            )
        except StageCancelled:
            # A reset may land after the agents finished.
            project = await self.store.load_project(project_id)
            if project.analysis_status is not ProjectAnalysisStatus.PENDING:
                await self._set_analysis_status(project, ProjectAnalysisStatus.PENDING)
            raise

    async def generate_tests(
        self,
        project_id: int,
        categories: Iterable[str] = ("functional",),
        complexity: str = "standard",
    ) -> StageResult:
        # Reject bad input before the stage lock is taken.
        selected = resolve_categories(categories)
        complexity_multiplier(complexity)
        return await self.workflow.run(
            project_id,
            "generate_tests",
            lambda: self._run_test_generation(project_id, selected, complexity),
        )

    async def generate_scripts(
        self, project_id: int, framework: Optional[str] = None
    ) -> StageResult:
        return await self.workflow.run(
            project_id,
            "generate_scripts",
            lambda: self._run_script_generation(project_id, framework),
        )

    async def run_tests(self, project_id: int) -> StageResult:
        return await self.workflow.run(
            project_id, "run_tests", lambda: self._run_execution(project_id)
        )

    async def run_stage(
        self, project_id: int, stage: str, options: Optional[Dict[str, Any]] = None
    ) -> StageResult:
        """Trigger a stage by name; used by the background worker."""
        options = options or {}
        if stage == "start_analysis":
            return await self.start_analysis(project_id)
        if stage == "generate_tests":
            return await self.generate_tests(
                project_id,
                options.get("categories") or ("functional",),
                options.get("complexity") or "standard",
            )
        if stage == "generate_scripts":
            return await self.generate_scripts(project_id, options.get("framework"))
        if stage == "run_tests":
            return await self.run_tests(project_id)
        raise ValueError(f"Unknown stage: {stage}")

    async def preflight(
        self, project_id: int, stage: str, options: Optional[Dict[str, Any]] = None
    ) -> WorkflowSnapshot:
        """
        Check that ``stage`` could run now without running it. Used before
        handing a stage to the background worker.
        """
        options = options or {}
        if stage == "generate_tests":
            resolve_categories(options.get("categories") or ("functional",))
            complexity_multiplier(options.get("complexity") or "standard")
        if self.workflow.is_busy(project_id):
            raise StageInProgress(project_id)
        state = await self.store.load_workflow(project_id)
        if state.running_stage:
            raise StageInProgress(project_id)
        if not getattr(state, STAGE_RULES[stage].target):
            self.workflow.check_gate(state, stage)
        return await self.workflow.snapshot(project_id)

    async def cancel_stage(self, project_id: int) -> Tuple[int, bool]:
        """
        Cancel the running stage of the project. Sub-tasks dispatched by this
        process are cancelled at once; a stage running in another process
        (the arq worker) picks the request up on its next poll. Returns the
        local count and whether a running stage was flagged.
        """
        cancelled = self.dispatcher.cancel_stage(project_id)
        requested = await self.store.request_cancel(project_id)
        return cancelled, requested

    async def reset_project(self, project_id: int) -> WorkflowSnapshot:
        """
        Clear every workflow flag and the active pointer of the project. A
        stage still running in another process is asked to cancel, and its
        flag write is refused once it settles.
        """
        if self.workflow.is_busy(project_id):
            raise StageInProgress(project_id)
        await self.store.reset_workflow(project_id)
        return await self.workflow.snapshot(project_id)

    # ------------------------------------------------------------------
    # Read models
    # ------------------------------------------------------------------

    async def get_workflow_state(self, project_id: int) -> WorkflowSnapshot:
        return await self.workflow.snapshot(project_id)

    async def get_active_project(self) -> Optional[WorkflowSnapshot]:
        state = await self.store.active_workflow()
        if state is None:
            return None
        return await self.workflow.snapshot(state.project_id)

    async def get_project(self, project_id: int) -> Project:
        return await self.store.load_project(project_id)

    async def list_projects(self) -> List[Project]:
        return await self.store.list_projects()

    async def get_test_case(self, test_case_id: int) -> TestCase:
        return await self.store.load_test_case(test_case_id)

    async def get_stats(self, project_id: int) -> ProjectStats:
        return await self.aggregator.snapshot_stats(project_id)

    async def get_report(self, project_id: int) -> ProjectReport:
        return await self.aggregator.report(project_id)

    async def list_analyses(
        self, project_id: int, kind: Optional[AnalysisKind] = None
    ) -> List[Analysis]:
        await self.store.load_project(project_id)
        return await self.store.load_analyses(project_id, kind)

    async def list_test_cases(self, project_id: int) -> List[TestCase]:
        await self.store.load_project(project_id)
        return await self.store.load_test_cases(project_id)

    def list_agents(self) -> List[Agent]:
        return self.registry.list_agents()

    async def record_outcome(self, test_case_id: int, outcome: Any):
        return await self.aggregator.record_outcome(test_case_id, outcome)

    async def record_outcomes(self, raws: Any):
        return await self.aggregator.record_outcomes(raws)

    @staticmethod
    def estimate_test_count(
        categories: Iterable[str], complexity: str = "standard"
    ) -> int:
        return estimate_test_count(categories, complexity)

    # ------------------------------------------------------------------
    # Stage runners
    # ------------------------------------------------------------------

    def _cancel_check(self, project_id: int):
        async def _check() -> bool:
            return await self.store.cancel_requested(project_id)

        return _check

    def _record_analysis_hook(self, project_id: int):
        async def _on_settle(subtask: SubTask, result: SubTaskResult) -> None:
            await self.store.save_analysis(
                Analysis(
                    project_id=project_id,
                    agent_id=result.agent_id,
                    kind=AnalysisKind(subtask.payload_kind),
                    status=RECORD_STATUS[result.status],
                    results=_result_payload(result),
                    test_case_id=subtask.test_case_id,
                    started_at=result.started_at,
                    completed_at=result.completed_at,
                )
            )

        return _on_settle

    async def _set_analysis_status(
        self, project: Project, status: ProjectAnalysisStatus
    ) -> Project:
        project.analysis_status = status
        return await self.store.save_project(project)

    async def _latest_analyses(self, project_id: int) -> Dict[str, Any]:
        latest: Dict[str, Any] = {}
        for analysis in await self.store.load_analyses(project_id):
            if (
                analysis.status is AnalysisStatus.COMPLETED
                and analysis.kind in ANALYSIS_KINDS
            ):
                latest[analysis.kind.value] = analysis.results
        return latest

    async def _latest_scripts(self, project_id: int) -> Dict[int, Any]:
        scripts: Dict[int, Any] = {}
        for analysis in await self.store.load_analyses(
            project_id, AnalysisKind.TEST_SCRIPT
        ):
            if analysis.status is AnalysisStatus.COMPLETED and analysis.test_case_id:
                scripts[analysis.test_case_id] = analysis.results
        return scripts

    async def _run_analysis(self, project_id: int) -> DispatchOutcome:
        project = await self.store.load_project(project_id)
        project = await self._set_analysis_status(
            project, ProjectAnalysisStatus.ANALYZING
        )
        snapshot = _project_snapshot(project)
        subtasks = [
            SubTask(
                key=kind.value,
                role=role,
                payload_kind=kind.value,
                input={"task": kind.value, "project": snapshot},
            )
            for kind, role in ANALYSIS_PLAN
        ]
        try:
            outcome = await self.dispatcher.dispatch(
                project_id,
                "start_analysis",
                subtasks,
                on_settle=self._record_analysis_hook(project_id),
                cancel_check=self._cancel_check(project_id),
            )
        except Exception:
            await self._set_analysis_status(project, ProjectAnalysisStatus.FAILED)
            raise

        if outcome.cancelled:
            status = ProjectAnalysisStatus.PENDING
        elif not outcome.succeeded:
            status = ProjectAnalysisStatus.FAILED
        else:
            status = ProjectAnalysisStatus.COMPLETED
        await self._set_analysis_status(project, status)
        return outcome

    async def _run_test_generation(
        self, project_id: int, categories: List[TestCategory], complexity: str
    ) -> DispatchOutcome:
        project = await self.store.load_project(project_id)
        snapshot = _project_snapshot(project)
        analyses = await self._latest_analyses(project_id)
        subtasks = [
            SubTask(
                key=category.id,
                role=AgentRole.TEST,
                payload_kind=AnalysisKind.TEST_GENERATION.value,
                input={
                    "task": AnalysisKind.TEST_GENERATION.value,
                    "project": snapshot,
                    "analyses": analyses,
                    "category": category.id,
                    "category_description": category.description,
                    "frameworks": list(category.frameworks),
                    "complexity": complexity,
                    "target_count": target_count(category, complexity),
                },
            )
            for category in categories
        ]
        outcome = await self.dispatcher.dispatch(
            project_id,
            "generate_tests",
            subtasks,
            on_settle=self._record_analysis_hook(project_id),
            cancel_check=self._cancel_check(project_id),
        )
        if outcome.succeeded and not outcome.cancelled:
            await self._store_generated_cases(project_id, categories, outcome)
        return outcome

    async def _store_generated_cases(
        self,
        project_id: int,
        categories: List[TestCategory],
        outcome: DispatchOutcome,
    ) -> List[TestCase]:
        """Insert drafts in sub-task order, skipping names already taken."""
        by_id = {category.id: category for category in categories}
        taken = {
            case.name.casefold()
            for case in await self.store.load_test_cases(project_id)
        }
        new_cases: List[TestCase] = []
        skipped = 0
        for result in outcome.succeeded:
            payload: TestGenerationPayload = result.payload
            category = by_id[result.key]
            for draft in payload.test_cases:
                name_key = draft.name.casefold()
                if name_key in taken:
                    skipped += 1
                    continue
                taken.add(name_key)
                new_cases.append(
                    TestCase(
                        project_id=project_id,
                        name=draft.name,
                        description=draft.description,
                        type=draft.type if draft.type != "unknown" else category.id,
                        priority=draft.priority,
                        framework=(
                            draft.framework
                            if draft.framework != "unknown"
                            else category.default_framework
                        ),
                        category=draft.category or category.id,
                        status=TestCaseStatus.GENERATED,
                    )
                )
        created = await self.store.add_test_cases(new_cases)
        logger.info(
            "Project %s: stored %s generated test case(s), skipped %s duplicate(s)",
            project_id,
            len(created),
            skipped,
        )
        return created

    async def _run_script_generation(
        self, project_id: int, framework: Optional[str]
    ) -> DispatchOutcome:
        project = await self.store.load_project(project_id)
        snapshot = _project_snapshot(project)
        cases = await self.store.load_test_cases(project_id)
        subtasks = [
            SubTask(
                key=f"script-{case.id}",
                role=AgentRole.TEST,
                payload_kind=AnalysisKind.TEST_SCRIPT.value,
                input={
                    "task": AnalysisKind.TEST_SCRIPT.value,
                    "project": snapshot,
                    "test_case": _test_case_snapshot(case),
                    "framework": framework or case.framework,
                },
                test_case_id=case.id,
            )
            for case in cases
        ]
        return await self.dispatcher.dispatch(
            project_id,
            "generate_scripts",
            subtasks,
            on_settle=self._record_analysis_hook(project_id),
            cancel_check=self._cancel_check(project_id),
        )

    async def _mark_running(self, subtask: SubTask) -> None:
        await self.aggregator.record_outcome(
            subtask.test_case_id,
            self.aggregator.internal_outcome(subtask.test_case_id, "running"),
        )

    async def _record_execution(
        self, subtask: SubTask, result: SubTaskResult
    ) -> None:
        if result.status is SubTaskStatus.SUCCEEDED:
            payload = result.payload
            outcome = self.aggregator.internal_outcome(
                subtask.test_case_id,
                payload.status,
                execution_time=payload.duration,
                results={
                    "framework": payload.framework,
                    "logs": payload.logs,
                    "errors": payload.errors,
                    "screenshots": payload.screenshots,
                    "agent_id": result.agent_id,
                },
            )
        elif result.status is SubTaskStatus.FAILED:
            outcome = self.aggregator.internal_outcome(
                subtask.test_case_id,
                "failed",
                results={
                    "errors": [result.error] if result.error else [],
                    "error_kind": result.error_kind,
                    "attempts": result.attempts,
                },
            )
        else:
            outcome = self.aggregator.internal_outcome(subtask.test_case_id, "pending")
        await self.aggregator.record_outcome(subtask.test_case_id, outcome)

    async def _run_execution(self, project_id: int) -> DispatchOutcome:
        cases = await self.store.load_test_cases(project_id)
        scripts = await self._latest_scripts(project_id)
        subtasks = [
            SubTask(
                key=f"run-{case.id}",
                role=AgentRole.ENVIRONMENT,
                payload_kind="execution",
                input={
                    "task": "execution",
                    "test_case": _test_case_snapshot(case),
                    "script": scripts.get(case.id),
                },
                test_case_id=case.id,
            )
            for case in cases
        ]
        return await self.dispatcher.dispatch(
            project_id,
            "run_tests",
            subtasks,
            on_start=self._mark_running,
            on_settle=self._record_execution,
            cancel_check=self._cancel_check(project_id),
        )


@lru_cache()
def get_orchestrator() -> Orchestrator:
    """Process-wide orchestrator wired to the configured database and LLM."""
    registry = AgentRegistry(settings.agents.instances_per_role)
    dispatcher = TaskDispatcher.from_settings(
        registry, LLMAgentBackend(), settings.dispatch
    )
    return Orchestrator(SqlProjectStore(AsyncSessionLocal), registry, dispatcher)

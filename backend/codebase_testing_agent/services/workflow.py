import asyncio
import logging
import weakref
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, Optional, Tuple

from codebase_testing_agent.schemas.workflow import (
    StageIssue,
    StageResult,
    WorkflowFlags,
    WorkflowSnapshot,
    WorkflowStage,
)
from codebase_testing_agent.services.dispatcher import DispatchOutcome
from codebase_testing_agent.services.errors import (
    StageCancelled,
    StageFailure,
    StageInProgress,
    StagePrecondition,
    WorkflowConflict,
)
from codebase_testing_agent.storage.models import (
    Project,
    ProjectAnalysisStatus,
    TestCase,
    TestCaseStatus,
    WorkflowState,
)
from codebase_testing_agent.storage.repository import STAGE_FLAGS, ProjectStore

logger = logging.getLogger(__name__)

OPEN_STATUSES = (TestCaseStatus.GENERATED, TestCaseStatus.PENDING, TestCaseStatus.RUNNING)


@dataclass(frozen=True)
class StageRule:
    requires: str
    target: str
    start_flag: Optional[str] = None


STAGE_RULES: Dict[str, StageRule] = {
    "start_analysis": StageRule(
        requires="project_created",
        start_flag="analysis_started",
        target="analysis_completed",
    ),
    "generate_tests": StageRule(requires="analysis_completed", target="tests_generated"),
    "generate_scripts": StageRule(
        requires="tests_generated", target="scripts_generated"
    ),
    "run_tests": StageRule(requires="scripts_generated", target="tests_run"),
}


def derive_stage(
    state: WorkflowState,
    analysis_status: ProjectAnalysisStatus,
    test_cases: Iterable[TestCase],
) -> WorkflowStage:
    if state.tests_run:
        if any(case.status in OPEN_STATUSES for case in test_cases):
            return WorkflowStage.TESTS_RUN
        return WorkflowStage.RESULTS_AVAILABLE
    if state.scripts_generated:
        return WorkflowStage.SCRIPTS_GENERATED
    if state.tests_generated:
        return WorkflowStage.TESTS_GENERATED
    if state.analysis_completed:
        return WorkflowStage.ANALYZED
    # A failed or cancelled analysis stays pinned at the last completed stage.
    if state.analysis_started and analysis_status is ProjectAnalysisStatus.ANALYZING:
        return WorkflowStage.ANALYZING
    return WorkflowStage.CREATED


def missing_predecessor(state: WorkflowState, flag: str) -> Optional[str]:
    """First unset flag up to and including ``flag``, walking the lattice in order."""
    for name in STAGE_FLAGS[: STAGE_FLAGS.index(flag) + 1]:
        if not getattr(state, name):
            return name
    return None


def _issue_summary(issues: int) -> str:
    if not issues:
        return "succeeded"
    noun = "issue" if issues == 1 else "issues"
    return f"succeeded with {issues} {noun}"


StageRunner = Callable[[], Awaitable[DispatchOutcome]]


class WorkflowStateMachine:
    """
    Gates stage triggers on the per-project flag lattice and applies the
    transition once the dispatcher has settled.

    One transition may be in flight per project; other projects are never
    blocked.
    """

    def __init__(self, store: ProjectStore):
        self.store = store
        # Entries vanish once no transition of the project holds the lock.
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, project_id: int) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = self._locks[project_id] = asyncio.Lock()
        return lock

    def is_busy(self, project_id: int) -> bool:
        lock = self._locks.get(project_id)
        return bool(lock and lock.locked())

    async def snapshot(self, project_id: int) -> WorkflowSnapshot:
        state = await self.store.load_workflow(project_id)
        project = await self.store.load_project(project_id)
        cases = await self.store.load_test_cases(project_id)
        return self._build_snapshot(state, project, cases)

    @staticmethod
    def _build_snapshot(
        state: WorkflowState, project: Project, cases: Iterable[TestCase]
    ) -> WorkflowSnapshot:
        return WorkflowSnapshot(
            project_id=state.project_id,
            stage=derive_stage(state, project.analysis_status, cases),
            flags=WorkflowFlags.model_validate(state),
            active=state.active,
            version=state.version,
            analysis_status=project.analysis_status.value,
            last_stage=state.last_stage,
            running_stage=state.running_stage,
        )

    def check_gate(self, state: WorkflowState, stage: str) -> StageRule:
        rule = STAGE_RULES[stage]
        missing = missing_predecessor(state, rule.requires)
        if missing is not None:
            logger.info(
                "Refusing %s for project %s: %s is not set",
                stage,
                state.project_id,
                missing,
            )
            raise StagePrecondition(stage, missing)
        return rule

    async def run(
        self, project_id: int, stage: str, runner: StageRunner
    ) -> StageResult:
        """
        Execute ``stage`` for the project via ``runner`` and advance the flags.

        Raises StageInProgress when another transition of the same project is
        running, StagePrecondition when a predecessor is missing, and
        StageFailure or StageCancelled when the stage did not complete. In
        those cases the target flag is left untouched.
        """
        if stage not in STAGE_RULES:
            raise ValueError(f"Unknown stage: {stage}")

        lock = self._lock_for(project_id)
        if lock.locked():
            raise StageInProgress(project_id)

        async with lock:
            state = await self.store.load_workflow(project_id)
            rule = STAGE_RULES[stage]
            if getattr(state, rule.target):
                logger.info(
                    "Stage %s already reached for project %s; nothing to do",
                    stage,
                    project_id,
                )
                return StageResult(
                    project_id=project_id,
                    stage=stage,
                    status="unchanged",
                    state=await self.snapshot(project_id),
                    message="already completed",
                )

            self.check_gate(state, stage)
            # The marker is visible to other processes such as the arq worker.
            await self.store.begin_stage(project_id, stage)
            try:
                outcome, message = await self._run_claimed(
                    project_id, stage, rule, state, runner
                )
            finally:
                await self.store.end_stage(project_id, stage)

            return StageResult(
                project_id=project_id,
                stage=stage,
                status="succeeded",
                state=await self.snapshot(project_id),
                succeeded=len(outcome.succeeded),
                issues=[StageIssue(**issue) for issue in outcome.issues],
                message=message,
            )

    async def _run_claimed(
        self,
        project_id: int,
        stage: str,
        rule: StageRule,
        state: WorkflowState,
        runner: StageRunner,
    ) -> Tuple[DispatchOutcome, str]:
        if rule.start_flag and not getattr(state, rule.start_flag):
            try:
                await self.store.mark_flags(project_id, rule.start_flag)
            except WorkflowConflict as exc:
                raise StagePrecondition(stage, exc.missing_flag) from exc

        started_at = datetime.now(timezone.utc)
        logger.info("Starting stage %s for project %s", stage, project_id)
        try:
            outcome = await runner()
        except StageFailure as exc:
            await self._save_report(
                project_id, stage, "failed", started_at, message=str(exc)
            )
            raise
        except Exception:
            logger.exception("Stage %s crashed for project %s", stage, project_id)
            await self._save_report(project_id, stage, "error", started_at)
            raise

        issues = outcome.issues
        if outcome.cancelled:
            await self._save_report(project_id, stage, "cancelled", started_at, outcome)
            raise StageCancelled(stage, project_id)
        if not outcome.succeeded:
            await self._save_report(project_id, stage, "failed", started_at, outcome)
            logger.error(
                "Stage %s failed for project %s: %s issue(s)",
                stage,
                project_id,
                len(issues),
            )
            raise StageFailure(stage, issues)

        try:
            await self.store.mark_flags(project_id, rule.target)
        except WorkflowConflict as exc:
            # The workflow was reset while the agents were working.
            await self._save_report(
                project_id,
                stage,
                "cancelled",
                started_at,
                outcome,
                f"superseded by a reset: {exc.missing_flag} is not set",
            )
            raise StageCancelled(stage, project_id) from exc

        message = _issue_summary(len(issues))
        await self._save_report(
            project_id, stage, "succeeded", started_at, outcome, message
        )
        logger.info("Stage %s for project %s %s", stage, project_id, message)
        return outcome, message

    async def _save_report(
        self,
        project_id: int,
        stage: str,
        status: str,
        started_at: datetime,
        outcome: Optional[DispatchOutcome] = None,
        message: str = "",
    ) -> None:
        report = {
            "stage": stage,
            "status": status,
            "message": message or status,
            "started_at": started_at.isoformat(),
            "completed_at": datetime.now(timezone.utc).isoformat(),
            "succeeded": len(outcome.succeeded) if outcome else 0,
            "issues": outcome.issues if outcome else [],
        }
        await self.store.save_stage_report(project_id, report)

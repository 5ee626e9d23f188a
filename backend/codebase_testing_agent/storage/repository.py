import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from codebase_testing_agent.services.errors import (
    ProjectNotFound,
    StageInProgress,
    TestCaseNotFound,
    WorkflowConflict,
)
from codebase_testing_agent.storage.models import (
    Analysis,
    AnalysisKind,
    Project,
    ProjectAnalysisStatus,
    TestCase,
    WorkflowState,
)

logger = logging.getLogger(__name__)

STAGE_FLAGS = (
    "project_created",
    "analysis_started",
    "analysis_completed",
    "tests_generated",
    "scripts_generated",
    "tests_run",
)


def _ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ProjectStore(Protocol):
    """Persistence operations the orchestrator depends on."""

    async def load_project(self, project_id: int) -> Project: ...

    async def list_projects(self) -> List[Project]: ...

    async def save_project(self, project: Project) -> Project: ...

    async def load_test_cases(self, project_id: int) -> List[TestCase]: ...

    async def load_test_case(self, test_case_id: int) -> TestCase: ...

    async def add_test_cases(self, test_cases: Iterable[TestCase]) -> List[TestCase]: ...

    async def upsert_test_case(self, test_case: TestCase) -> TestCase: ...

    async def load_analyses(
        self, project_id: int, kind: Optional[AnalysisKind] = None
    ) -> List[Analysis]: ...

    async def save_analysis(self, analysis: Analysis) -> Analysis: ...

    async def load_workflow(self, project_id: int) -> WorkflowState: ...

    async def create_workflow(self, project_id: int) -> WorkflowState: ...

    async def mark_flags(self, project_id: int, *flags: str) -> WorkflowState: ...

    async def reset_workflow(self, project_id: int) -> WorkflowState: ...

    async def save_stage_report(
        self, project_id: int, report: Dict[str, Any]
    ) -> WorkflowState: ...

    async def touch_workflow(self, project_id: int) -> WorkflowState: ...

    async def begin_stage(self, project_id: int, stage: str) -> None: ...

    async def end_stage(self, project_id: int, stage: str) -> None: ...

    async def request_cancel(self, project_id: int) -> bool: ...

    async def cancel_requested(self, project_id: int) -> bool: ...

    async def active_workflow(self) -> Optional[WorkflowState]: ...


class SqlProjectStore:
    """ProjectStore backed by SQLAlchemy async sessions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # Projects

    async def load_project(self, project_id: int) -> Project:
        async with self._session_factory() as session:
            project = await session.get(Project, project_id)
        if project is None:
            raise ProjectNotFound(project_id)
        return project

    async def list_projects(self) -> List[Project]:
        async with self._session_factory() as session:
            result = await session.execute(select(Project).order_by(Project.id))
            return list(result.scalars().all())

    async def save_project(self, project: Project) -> Project:
        async with self._session_factory() as session:
            if project.id is None:
                session.add(project)
            else:
                project = await session.merge(project)
            await session.commit()
            await session.refresh(project)
        logger.debug("Saved project %s", project.id)
        return project

    # Test cases

    async def load_test_cases(self, project_id: int) -> List[TestCase]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TestCase)
                .where(TestCase.project_id == project_id)
                .order_by(TestCase.id)
            )
            cases = list(result.scalars().all())
        for case in cases:
            case.last_reported_at = _ensure_utc(case.last_reported_at)
        return cases

    async def load_test_case(self, test_case_id: int) -> TestCase:
        async with self._session_factory() as session:
            case = await session.get(TestCase, test_case_id)
        if case is None:
            raise TestCaseNotFound(test_case_id)
        case.last_reported_at = _ensure_utc(case.last_reported_at)
        return case

    async def add_test_cases(self, test_cases: Iterable[TestCase]) -> List[TestCase]:
        cases = list(test_cases)
        if not cases:
            return []
        async with self._session_factory() as session:
            session.add_all(cases)
            await session.commit()
            for case in cases:
                await session.refresh(case)
        logger.debug(
            "Inserted %s test case(s) for project %s", len(cases), cases[0].project_id
        )
        return cases

    async def upsert_test_case(self, test_case: TestCase) -> TestCase:
        async with self._session_factory() as session:
            if test_case.id is None:
                session.add(test_case)
            else:
                test_case = await session.merge(test_case)
            await session.commit()
            await session.refresh(test_case)
        test_case.last_reported_at = _ensure_utc(test_case.last_reported_at)
        return test_case

    # Analyses

    async def load_analyses(
        self, project_id: int, kind: Optional[AnalysisKind] = None
    ) -> List[Analysis]:
        stmt = select(Analysis).where(Analysis.project_id == project_id)
        if kind is not None:
            stmt = stmt.where(Analysis.kind == kind)
        async with self._session_factory() as session:
            result = await session.execute(stmt.order_by(Analysis.id))
            return list(result.scalars().all())

    async def save_analysis(self, analysis: Analysis) -> Analysis:
        async with self._session_factory() as session:
            session.add(analysis)
            await session.commit()
            await session.refresh(analysis)
        return analysis

    # Workflow state

    async def load_workflow(self, project_id: int) -> WorkflowState:
        async with self._session_factory() as session:
            state = await session.get(WorkflowState, project_id)
        if state is None:
            raise ProjectNotFound(project_id)
        return state

    async def create_workflow(self, project_id: int) -> WorkflowState:
        """Create the state row with project_created set and make it active."""
        async with self._session_factory() as session:
            await session.execute(
                update(WorkflowState)
                .where(WorkflowState.active.is_(True))
                .values(active=False)
            )
            state = WorkflowState(
                project_id=project_id,
                project_created=True,
                active=True,
                version=1,
            )
            session.add(state)
            await session.commit()
            await session.refresh(state)
        return state

    async def _update_workflow(
        self, project_id: int, values: Dict[str, Any], session: AsyncSession
    ) -> None:
        result = await session.execute(
            update(WorkflowState)
            .where(WorkflowState.project_id == project_id)
            .values(version=WorkflowState.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ProjectNotFound(project_id)

    async def mark_flags(self, project_id: int, *flags: str) -> WorkflowState:
        unknown = [flag for flag in flags if flag not in STAGE_FLAGS]
        if unknown:
            raise ValueError(f"Unknown workflow flag(s): {unknown}")
        # Every earlier flag must already be set in the row being written, so a
        # reset committed by another process turns this into a no-op UPDATE.
        highest = max(STAGE_FLAGS.index(flag) for flag in flags)
        required = [name for name in STAGE_FLAGS[:highest] if name not in flags]
        stmt = update(WorkflowState).where(WorkflowState.project_id == project_id)
        for name in required:
            stmt = stmt.where(getattr(WorkflowState, name).is_(True))
        stmt = stmt.values(
            version=WorkflowState.version + 1, **{flag: True for flag in flags}
        ).execution_options(synchronize_session=False)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            if result.rowcount:
                await session.commit()
        if not result.rowcount:
            state = await self.load_workflow(project_id)
            missing = next(
                (name for name in required if not getattr(state, name)),
                required[0] if required else flags[0],
            )
            logger.warning(
                "Project %s: not marking %s, %s was cleared concurrently",
                project_id,
                list(flags),
                missing,
            )
            raise WorkflowConflict(project_id, flags[-1], missing)
        logger.debug("Project %s marked flags %s", project_id, list(flags))
        return await self.load_workflow(project_id)

    async def reset_workflow(self, project_id: int) -> WorkflowState:
        """
        Clear all six stage flags together with the active pointer in a single
        UPDATE, and put the project back to pending. A stage still running
        elsewhere is asked to cancel.
        """
        cleared = {flag: False for flag in STAGE_FLAGS}
        async with self._session_factory() as session:
            await self._update_workflow(
                project_id,
                {
                    **cleared,
                    "active": False,
                    "last_stage": None,
                    # SET expressions see the row as it was before the UPDATE.
                    "cancel_requested": WorkflowState.running_stage.is_not(None),
                    "running_stage": None,
                },
                session,
            )
            await session.execute(
                update(Project)
                .where(Project.id == project_id)
                .values(analysis_status=ProjectAnalysisStatus.PENDING)
            )
            await session.commit()
        logger.info("Workflow for project %s reset", project_id)
        return await self.load_workflow(project_id)

    async def save_stage_report(
        self, project_id: int, report: Dict[str, Any]
    ) -> WorkflowState:
        async with self._session_factory() as session:
            await self._update_workflow(project_id, {"last_stage": report}, session)
            await session.commit()
        return await self.load_workflow(project_id)

    async def touch_workflow(self, project_id: int) -> WorkflowState:
        async with self._session_factory() as session:
            await self._update_workflow(project_id, {}, session)
            await session.commit()
        return await self.load_workflow(project_id)

    # Stage run markers. They are shared by every process working on the
    # database and do not bump the version.

    async def begin_stage(self, project_id: int, stage: str) -> None:
        """Claim the project for ``stage``; StageInProgress if already claimed."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(WorkflowState)
                .where(WorkflowState.project_id == project_id)
                .where(WorkflowState.running_stage.is_(None))
                .values(running_stage=stage, cancel_requested=False)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if not result.rowcount:
            state = await self.load_workflow(project_id)
            logger.info(
                "Project %s is already running %s elsewhere; refusing %s",
                project_id,
                state.running_stage,
                stage,
            )
            raise StageInProgress(project_id)

    async def end_stage(self, project_id: int, stage: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(WorkflowState)
                .where(WorkflowState.project_id == project_id)
                .where(WorkflowState.running_stage == stage)
                .values(running_stage=None, cancel_requested=False)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def request_cancel(self, project_id: int) -> bool:
        """Flag the running stage for cancellation. False when none is running."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(WorkflowState)
                .where(WorkflowState.project_id == project_id)
                .where(WorkflowState.running_stage.is_not(None))
                .values(cancel_requested=True)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if not result.rowcount:
            await self.load_workflow(project_id)
            return False
        logger.info("Cancel requested for the running stage of project %s", project_id)
        return True

    async def cancel_requested(self, project_id: int) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WorkflowState.cancel_requested).where(
                    WorkflowState.project_id == project_id
                )
            )
            return bool(result.scalar_one_or_none())

    async def active_workflow(self) -> Optional[WorkflowState]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WorkflowState)
                .where(WorkflowState.active.is_(True))
                .order_by(WorkflowState.project_id.desc())
                .limit(1)
            )
            return result.scalars().first()

import asyncio
import logging
import weakref
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

from codebase_testing_agent.schemas.analysis import AnalysisRead
from codebase_testing_agent.schemas.project import ProjectRead
from codebase_testing_agent.schemas.testcase import OutcomeBatchResult, TestCaseRead
from codebase_testing_agent.schemas.workflow import ProjectReport, ProjectStats
from codebase_testing_agent.services.errors import TestCaseNotFound, ValidationError
from codebase_testing_agent.services.ingestion import (
    ExecutionOutcome,
    ingest_outcomes,
    ingest_record,
)
from codebase_testing_agent.services.workflow import derive_stage
from codebase_testing_agent.storage.models import (
    AnalysisStatus,
    TestCase,
    TestCaseStatus,
)
from codebase_testing_agent.storage.repository import ProjectStore

logger = logging.getLogger(__name__)


def round_half_up_percent(part: int, whole: int) -> int:
    """Integer percentage rounded half up; 0 for an empty whole."""
    if whole <= 0:
        return 0
    return (part * 200 + whole) // (2 * whole)


def compute_stats(cases: Iterable[TestCase], version: int = 0) -> ProjectStats:
    stats = ProjectStats(version=version)
    for case in cases:
        stats.total += 1
        if case.status is TestCaseStatus.PASSED:
            stats.passed += 1
        elif case.status is TestCaseStatus.FAILED:
            stats.failed += 1
        elif case.status is TestCaseStatus.RUNNING:
            stats.running += 1
        else:
            stats.pending += 1
    stats.success_rate = round_half_up_percent(stats.passed, stats.total)
    return stats


class ResultAggregator:
    """
    Applies execution outcomes per test case with last-writer-wins ordering
    on the report timestamp, and derives statistics and reports from the
    stored rows on demand.
    """

    def __init__(self, store: ProjectStore):
        self.store = store
        # Entries vanish once no outcome write of the project holds the lock.
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._last_tick: Optional[datetime] = None

    def _lock_for(self, project_id: int) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = self._locks[project_id] = asyncio.Lock()
        return lock

    def next_timestamp(self) -> datetime:
        """Strictly increasing UTC clock for internally generated outcomes."""
        now = datetime.now(timezone.utc)
        if self._last_tick is not None and now <= self._last_tick:
            now = self._last_tick + timedelta(microseconds=1)
        self._last_tick = now
        return now

    def internal_outcome(
        self,
        test_case_id: int,
        status: str,
        execution_time: Optional[int] = None,
        results: Optional[Dict[str, Any]] = None,
    ) -> ExecutionOutcome:
        return ExecutionOutcome(
            test_case_id=test_case_id,
            status=status,
            execution_time=execution_time,
            results=results,
            reported_at=self.next_timestamp(),
        )

    async def record_outcome(
        self, test_case_id: int, outcome: Any
    ) -> Tuple[bool, TestCase]:
        """
        Apply ``outcome`` to the test case unless a report with the same or a
        later timestamp was already applied. Returns (applied, test_case).
        """
        if not isinstance(outcome, ExecutionOutcome):
            raw = outcome.model_dump() if hasattr(outcome, "model_dump") else outcome
            if isinstance(raw, dict):
                raw = {**raw, "test_case_id": test_case_id}
            outcome = ingest_record(ExecutionOutcome, raw)
            if outcome is None:
                raise ValidationError(f"Invalid outcome for test case {test_case_id}")
        elif outcome.test_case_id != test_case_id:
            raise ValidationError(
                f"Outcome is for test case {outcome.test_case_id}, not {test_case_id}"
            )

        project_id = (await self.store.load_test_case(test_case_id)).project_id
        lock = self._lock_for(project_id)
        async with lock:
            case = await self.store.load_test_case(test_case_id)
            if (
                case.last_reported_at is not None
                and outcome.reported_at <= case.last_reported_at
            ):
                logger.debug(
                    "Discarding outcome %s for test case %s: reported_at %s <= %s",
                    outcome.status,
                    test_case_id,
                    outcome.reported_at.isoformat(),
                    case.last_reported_at.isoformat(),
                )
                return False, case

            case.status = TestCaseStatus(outcome.status)
            if outcome.execution_time is not None:
                case.execution_time = outcome.execution_time
            if outcome.results is not None:
                case.results = outcome.results
            case.last_reported_at = outcome.reported_at
            case = await self.store.upsert_test_case(case)
            await self.store.touch_workflow(project_id)

        logger.info(
            "Test case %s (project %s) is now %s",
            test_case_id,
            project_id,
            case.status.value,
        )
        return True, case

    async def record_outcomes(self, raws: Any) -> OutcomeBatchResult:
        """Ingest a raw batch of outcomes; unusable or unknown records are dropped."""
        batch = ingest_outcomes(raws)
        result = OutcomeBatchResult(dropped=batch.dropped)
        for outcome in batch.records:
            try:
                applied, _ = await self.record_outcome(outcome.test_case_id, outcome)
            except TestCaseNotFound:
                logger.warning(
                    "Dropping outcome for unknown test case %s", outcome.test_case_id
                )
                result.dropped += 1
                continue
            if applied:
                result.applied += 1
            else:
                result.discarded += 1
        logger.info(
            "Outcome batch: applied=%s discarded=%s dropped=%s",
            result.applied,
            result.discarded,
            result.dropped,
        )
        return result

    async def snapshot_stats(self, project_id: int) -> ProjectStats:
        state = await self.store.load_workflow(project_id)
        cases = await self.store.load_test_cases(project_id)
        return compute_stats(cases, version=state.version)

    async def report(self, project_id: int) -> ProjectReport:
        """Deterministic projection of the stored project state."""
        project = await self.store.load_project(project_id)
        state = await self.store.load_workflow(project_id)
        cases = await self.store.load_test_cases(project_id)
        analyses = await self.store.load_analyses(project_id)

        completed = sum(1 for a in analyses if a.status is AnalysisStatus.COMPLETED)
        return ProjectReport(
            project=ProjectRead.model_validate(project),
            stage=derive_stage(state, project.analysis_status, cases),
            stats=compute_stats(cases, version=state.version),
            analysis_progress=round_half_up_percent(completed, len(analyses)),
            test_cases=[
                TestCaseRead.model_validate(case)
                for case in sorted(cases, key=lambda c: c.id)
            ],
            analyses=[
                AnalysisRead.model_validate(analysis)
                for analysis in sorted(analyses, key=lambda a: a.id)
            ],
            version=state.version,
        )

from datetime import datetime, timezone

import pytest

from conftest import create_project
from codebase_testing_agent.services.aggregator import (
    ResultAggregator,
    compute_stats,
    round_half_up_percent,
)
from codebase_testing_agent.services.errors import TestCaseNotFound, ValidationError
from codebase_testing_agent.storage import models


def _at(seconds):
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


async def _add_cases(store, project_id, count):
    return await store.add_test_cases(
        models.TestCase(
            project_id=project_id,
            name=f"case {i}",
            type="functional",
            priority="medium",
            framework="jest",
            status=models.TestCaseStatus.GENERATED,
        )
        for i in range(count)
    )


def test_round_half_up_percent():
    assert round_half_up_percent(0, 0) == 0
    assert round_half_up_percent(1, 8) == 13
    assert round_half_up_percent(2, 3) == 67
    assert round_half_up_percent(1, 3) == 33
    assert round_half_up_percent(4, 4) == 100


def test_compute_stats():
    statuses = (
        [models.TestCaseStatus.PASSED] * 7
        + [models.TestCaseStatus.FAILED] * 2
        + [models.TestCaseStatus.RUNNING]
    )
    stats = compute_stats([models.TestCase(status=s) for s in statuses], version=4)

    assert (stats.total, stats.passed, stats.failed, stats.running) == (10, 7, 2, 1)
    assert stats.pending == 0
    assert stats.success_rate == 70
    assert stats.version == 4

    empty = compute_stats([])
    assert empty.total == 0
    assert empty.success_rate == 0


def test_internal_clock_is_strictly_increasing():
    aggregator = ResultAggregator(store=None)
    ticks = [aggregator.next_timestamp() for _ in range(50)]

    assert all(earlier < later for earlier, later in zip(ticks, ticks[1:]))


@pytest.mark.asyncio
async def test_outcomes_apply_in_report_order(orchestrator, store):
    project_id = await create_project(orchestrator)
    [case] = await _add_cases(store, project_id, 1)
    aggregator = orchestrator.aggregator

    applied, _ = await aggregator.record_outcome(
        case.id, {"status": "passed", "reported_at": _at(5)}
    )
    assert applied
    stale, current = await aggregator.record_outcome(
        case.id, {"status": "failed", "reported_at": _at(3)}
    )
    assert not stale
    assert current.status is models.TestCaseStatus.PASSED

    same, _ = await aggregator.record_outcome(
        case.id, {"status": "failed", "reported_at": _at(5)}
    )
    assert not same

    applied, updated = await aggregator.record_outcome(
        case.id,
        {"status": "failed", "reported_at": _at(6), "executionTime": 250},
    )
    assert applied
    assert updated.status is models.TestCaseStatus.FAILED
    assert updated.execution_time == 250
    assert updated.last_reported_at == _at(6)


@pytest.mark.asyncio
async def test_outcome_errors(orchestrator, store):
    project_id = await create_project(orchestrator)
    [case] = await _add_cases(store, project_id, 1)

    with pytest.raises(TestCaseNotFound):
        await orchestrator.record_outcome(999, {"status": "passed"})
    with pytest.raises(ValidationError):
        await orchestrator.record_outcome(case.id, {"status": "skipped"})


@pytest.mark.asyncio
async def test_outcome_batch_counts(orchestrator, store):
    project_id = await create_project(orchestrator)
    first, second = await _add_cases(store, project_id, 2)
    version = (await orchestrator.get_stats(project_id)).version

    result = await orchestrator.record_outcomes(
        [
            {"testCaseId": first.id, "status": "passed", "reportedAt": 10},
            {"testCaseId": first.id, "status": "failed", "reportedAt": 9},
            {"testCaseId": second.id, "status": "running", "reportedAt": 10},
            {"testCaseId": 999, "status": "passed"},
            {"status": "passed"},
        ]
    )

    assert (result.applied, result.discarded, result.dropped) == (2, 1, 2)
    stats = await orchestrator.get_stats(project_id)
    assert (stats.passed, stats.running, stats.success_rate) == (1, 1, 50)
    assert stats.version == version + 2


@pytest.mark.asyncio
async def test_report_is_deterministic(orchestrator):
    project_id = await create_project(orchestrator)
    await orchestrator.start_analysis(project_id)
    await orchestrator.generate_tests(project_id, ["functional", "api"])

    first = await orchestrator.get_report(project_id)
    second = await orchestrator.get_report(project_id)

    assert first.model_dump() == second.model_dump()
    assert first.stage == "tests_generated"
    assert first.stats.total == 4
    assert first.stats.pending == 4
    assert first.analysis_progress == 100
    assert [case.id for case in first.test_cases] == sorted(
        case.id for case in first.test_cases
    )


@pytest.mark.asyncio
async def test_outcomes_with_utc_offsets_compare_by_instant(orchestrator, store):
    project_id = await create_project(orchestrator)
    [case] = await _add_cases(store, project_id, 1)

    # 10:00+05:00 is 05:00Z, so the 07:00Z report is the later one.
    applied, _ = await orchestrator.record_outcome(
        case.id, {"status": "passed", "reportedAt": "2024-01-01T10:00:00+05:00"}
    )
    assert applied
    applied, updated = await orchestrator.record_outcome(
        case.id, {"status": "failed", "reportedAt": "2024-01-01T07:00:00Z"}
    )
    assert applied
    assert updated.status is models.TestCaseStatus.FAILED
    assert updated.last_reported_at == datetime(2024, 1, 1, 7, tzinfo=timezone.utc)

    stale, current = await orchestrator.record_outcome(
        case.id, {"status": "passed", "reportedAt": "2024-01-01T08:30:00+02:00"}
    )
    assert not stale
    assert current.status is models.TestCaseStatus.FAILED


@pytest.mark.asyncio
async def test_outcome_batch_with_bad_ids_applies_the_rest(orchestrator, store):
    project_id = await create_project(orchestrator)
    cases = await _add_cases(store, project_id, 7)

    raws = [
        {"testCaseId": case.id, "status": "passed", "reportedAt": 10 + i}
        for i, case in enumerate(cases)
    ]
    raws[3:3] = [
        {"status": "failed"},
        {"testCaseId": "not-an-id", "status": "failed"},
        {"testCaseId": -1, "status": "failed"},
    ]
    assert len(raws) == 10

    result = await orchestrator.record_outcomes(raws)

    assert (result.applied, result.discarded, result.dropped) == (7, 0, 3)
    stats = await orchestrator.get_stats(project_id)
    assert (stats.total, stats.passed, stats.success_rate) == (7, 7, 100)

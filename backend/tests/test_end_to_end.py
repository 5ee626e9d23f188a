import pytest

from conftest import ScriptedBackend, create_project
from codebase_testing_agent.schemas.workflow import WorkflowStage
from codebase_testing_agent.services.errors import (
    StageFailure,
    StagePrecondition,
    ValidationError,
)
from codebase_testing_agent.services.orchestrator import Orchestrator
from codebase_testing_agent.storage import models


def _fail_api_case(role, payload):
    if payload["test_case"]["name"] == "api case 0":
        return {"status": "failed", "duration": 40, "errors": ["expected 200, got 500"]}
    return {"status": "passed", "duration": 75}


@pytest.mark.asyncio
async def test_analysis_with_one_failed_agent_still_completes(make_orchestrator):
    backend = ScriptedBackend(risk_assessment="The repository looks risky.")
    orchestrator = make_orchestrator(backend)
    project_id = await create_project(orchestrator)

    result = await orchestrator.start_analysis(project_id)

    assert result.status == "succeeded"
    assert result.succeeded == 2
    assert result.message == "succeeded with 1 issue"
    assert [issue.key for issue in result.issues] == ["risk_assessment"]
    assert result.state.stage == WorkflowStage.ANALYZED
    assert result.state.analysis_status == "completed"

    analyses = await orchestrator.list_analyses(project_id)
    statuses = {a.kind: a.status for a in analyses}
    assert statuses == {
        models.AnalysisKind.CODE_ANALYSIS: models.AnalysisStatus.COMPLETED,
        models.AnalysisKind.ARCHITECTURE_REVIEW: models.AnalysisStatus.COMPLETED,
        models.AnalysisKind.RISK_ASSESSMENT: models.AnalysisStatus.FAILED,
    }
    code = next(a for a in analyses if a.kind is models.AnalysisKind.CODE_ANALYSIS)
    assert code.results["frameworks"] == ["fastapi", "sqlalchemy"]
    assert code.agent_id is not None

    report = await orchestrator.get_report(project_id)
    assert report.analysis_progress == 67


@pytest.mark.asyncio
async def test_generation_rejected_before_analysis(orchestrator, backend):
    project_id = await create_project(orchestrator)

    with pytest.raises(StagePrecondition):
        await orchestrator.generate_tests(project_id, ["functional"])
    with pytest.raises(ValidationError):
        await orchestrator.generate_tests(project_id, ["astrology"])

    assert await orchestrator.list_test_cases(project_id) == []
    assert backend.calls == []


@pytest.mark.asyncio
async def test_full_pipeline_reaches_results(make_orchestrator):
    backend = ScriptedBackend(execution=_fail_api_case)
    orchestrator = make_orchestrator(backend)
    project_id = await create_project(orchestrator)

    await orchestrator.start_analysis(project_id)
    generated = await orchestrator.generate_tests(
        project_id, ["functional", "api"], "comprehensive"
    )
    assert generated.state.stage == WorkflowStage.TESTS_GENERATED

    [functional_call, api_call] = sorted(
        (call[2] for call in backend.calls_for("test_generation")),
        key=lambda payload: payload["category"],
    )
    assert api_call["category"] == "api"
    assert api_call["target_count"] == 12
    assert "code_analysis" in api_call["analyses"]
    assert functional_call["frameworks"][0] == "jest"

    cases = await orchestrator.list_test_cases(project_id)
    assert len(cases) == 4
    api_case = next(case for case in cases if case.name == "api case 0")
    assert api_case.category == "api"
    assert api_case.type == "api"
    assert api_case.framework == "newman"
    assert api_case.priority == "high"
    assert api_case.status is models.TestCaseStatus.GENERATED

    scripts = await orchestrator.generate_scripts(project_id)
    assert scripts.succeeded == 4
    stored = await orchestrator.list_analyses(
        project_id, models.AnalysisKind.TEST_SCRIPT
    )
    assert {a.test_case_id for a in stored} == {case.id for case in cases}

    run = await orchestrator.run_tests(project_id)
    assert run.state.stage == WorkflowStage.RESULTS_AVAILABLE
    execution_inputs = [call[2] for call in backend.calls_for("execution")]
    assert all(payload["script"]["script"] for payload in execution_inputs)

    stats = await orchestrator.get_stats(project_id)
    assert (stats.total, stats.passed, stats.failed) == (4, 3, 1)
    assert stats.success_rate == 75

    failed = await orchestrator.get_test_case(api_case.id)
    assert failed.status is models.TestCaseStatus.FAILED
    assert failed.execution_time == 40
    assert failed.results["errors"] == ["expected 200, got 500"]


@pytest.mark.asyncio
async def test_generated_names_are_deduplicated(make_orchestrator):
    def _same_names(role, payload):
        return [
            {"name": "Login works", "framework": "cypress"},
            {"name": "login WORKS"},
            {"name": f"{payload['category']} only"},
        ]

    orchestrator = make_orchestrator(ScriptedBackend(test_generation=_same_names))
    project_id = await create_project(orchestrator)
    await orchestrator.start_analysis(project_id)

    await orchestrator.generate_tests(project_id, ["functional", "security"])

    cases = await orchestrator.list_test_cases(project_id)
    names = sorted(case.name for case in cases)
    assert names == ["Login works", "functional only", "security only"]


@pytest.mark.asyncio
async def test_failed_execution_agent_marks_case_failed(make_orchestrator):
    backend = ScriptedBackend(execution="environment crashed")
    orchestrator = make_orchestrator(backend)
    project_id = await create_project(orchestrator)
    await orchestrator.start_analysis(project_id)
    await orchestrator.generate_tests(project_id, ["functional"])
    await orchestrator.generate_scripts(project_id)

    with pytest.raises(StageFailure):
        await orchestrator.run_tests(project_id)

    cases = await orchestrator.list_test_cases(project_id)
    assert {case.status for case in cases} == {models.TestCaseStatus.FAILED}
    assert all(case.results["error_kind"] == "validation" for case in cases)
    state = await orchestrator.get_workflow_state(project_id)
    assert not state.flags.tests_run
    assert state.stage == WorkflowStage.SCRIPTS_GENERATED


def test_estimate_is_a_hint_from_category_baselines():
    assert Orchestrator.estimate_test_count(["functional"]) == 10
    assert Orchestrator.estimate_test_count(["api", "e2e"], "basic") == 7
    with pytest.raises(ValidationError):
        Orchestrator.estimate_test_count(["functional"], "extreme")

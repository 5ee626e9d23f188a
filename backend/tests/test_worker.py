import pytest

pytest.importorskip("arq")

from conftest import create_project  # noqa: E402
from codebase_testing_agent import worker  # noqa: E402


@pytest.mark.asyncio
async def test_queued_stage_runs_through_orchestrator(orchestrator, monkeypatch):
    monkeypatch.setattr(worker, "get_orchestrator", lambda: orchestrator)
    project_id = await create_project(orchestrator)

    result = await worker.run_stage_task(
        {"job_id": "job-1"}, project_id, "start_analysis"
    )

    assert result["status"] == "succeeded"
    assert result["state"]["stage"] == "analyzed"


@pytest.mark.asyncio
async def test_queued_stage_errors_are_returned(orchestrator, monkeypatch):
    monkeypatch.setattr(worker, "get_orchestrator", lambda: orchestrator)
    project_id = await create_project(orchestrator)

    result = await worker.run_stage_task(
        {"job_id": "job-2"}, project_id, "generate_tests", {"categories": ["api"]}
    )

    assert result["status"] == "error"
    assert "analysis_started" in result["error"]

    state = await orchestrator.get_workflow_state(project_id)
    assert not state.flags.tests_generated

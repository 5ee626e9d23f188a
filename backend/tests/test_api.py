import pytest
import pytest_asyncio

httpx = pytest.importorskip("httpx")

from conftest import ScriptedBackend  # noqa: E402
from codebase_testing_agent.api.dependencies import get_orchestrator  # noqa: E402
from codebase_testing_agent.main import app  # noqa: E402


@pytest_asyncio.fixture
async def client(make_orchestrator):
    orchestrator = make_orchestrator(
        ScriptedBackend(risk_assessment="no structured answer")
    )
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def _create(client, name="Billing service"):
    response = await client.post(
        "/api/v1/projects/", json={"name": name, "source_type": "github"}
    )
    assert response.status_code == 201
    return response.json()["project_id"]


@pytest.mark.asyncio
async def test_project_lifecycle_over_http(client):
    assert (await client.get("/api/v1/projects/active")).status_code == 204
    project_id = await _create(client)

    active = await client.get("/api/v1/projects/active")
    assert active.json()["project_id"] == project_id
    assert active.json()["stage"] == "created"

    analysis = await client.post(f"/api/v1/projects/{project_id}/analysis")
    assert analysis.status_code == 200
    body = analysis.json()
    assert body["status"] == "succeeded"
    assert body["state"]["stage"] == "analyzed"
    assert body["issues"][0]["key"] == "risk_assessment"

    tests = await client.post(
        f"/api/v1/projects/{project_id}/tests",
        json={"categories": ["functional"], "complexity": "basic"},
    )
    assert tests.status_code == 200
    cases = (await client.get(f"/api/v1/projects/{project_id}/testcases")).json()
    assert [case["status"] for case in cases] == ["generated", "generated"]

    outcome = await client.post(
        f"/api/v1/testcases/{cases[0]['id']}/outcome",
        json={"status": "passed", "execution_time": 30},
    )
    assert outcome.status_code == 200
    assert outcome.json()["applied"] is True
    assert outcome.json()["test_case"]["status"] == "passed"

    stats = (await client.get(f"/api/v1/projects/{project_id}/stats")).json()
    assert stats["total"] == 2
    assert stats["success_rate"] == 50

    analyses = await client.get(
        f"/api/v1/projects/{project_id}/analyses", params={"kind": "code_analysis"}
    )
    assert [a["kind"] for a in analyses.json()] == ["code_analysis"]

    report = (await client.get(f"/api/v1/projects/{project_id}/report")).json()
    assert report["stage"] == "tests_generated"
    assert report["project"]["name"] == "Billing service"

    reset = await client.post(f"/api/v1/projects/{project_id}/reset")
    assert reset.json()["active"] is False
    assert reset.json()["flags"]["tests_generated"] is False


@pytest.mark.asyncio
async def test_errors_map_to_status_codes(client):
    project_id = await _create(client)

    missing = await client.get("/api/v1/projects/999/workflow")
    assert missing.status_code == 404

    early = await client.post(f"/api/v1/projects/{project_id}/runs")
    assert early.status_code == 409
    assert early.json()["detail"]["missing"] == "analysis_started"

    bad_category = await client.post(
        f"/api/v1/projects/{project_id}/tests", json={"categories": ["astrology"]}
    )
    assert bad_category.status_code == 422

    assert (await client.get("/api/v1/testcases/999")).status_code == 404

    # Redis is not configured in tests, so background triggers cannot be queued.
    queued = await client.post(
        f"/api/v1/projects/{project_id}/analysis", params={"background": True}
    )
    assert queued.status_code == 503


@pytest.mark.asyncio
async def test_batch_outcomes_and_estimate(client):
    batch = await client.post(
        "/api/v1/testcases/outcomes",
        json=[{"testCaseId": 12345, "status": "passed"}, {"status": "failed"}, 7],
    )
    assert batch.status_code == 200
    assert batch.json() == {"applied": 0, "discarded": 0, "dropped": 3}

    estimate = await client.get(
        "/api/v1/testcases/estimate",
        params=[("categories", "functional"), ("categories", "security")],
    )
    assert estimate.json()["estimated_count"] == 16

    agents = (await client.get("/api/v1/agents/")).json()
    assert len(agents) == 20
    assert {agent["status"] for agent in agents} == {"ready"}
    assert [a["role"] for a in agents if not a["dispatchable"]] == ["supervisor"] * 4


@pytest.mark.asyncio
async def test_cancel_without_running_stage(client):
    project_id = await _create(client)

    idle = await client.post(f"/api/v1/projects/{project_id}/cancel")
    assert idle.status_code == 200
    assert idle.json() == {"project_id": project_id, "cancelled": 0, "requested": False}

    missing = await client.post("/api/v1/projects/999/cancel")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_log_tail_returns_last_lines(client, tmp_path, monkeypatch):
    from codebase_testing_agent.api.v1 import logs as logs_api

    log_file = tmp_path / "app.log"
    monkeypatch.setattr(logs_api, "LOG_FILE_PATH", log_file)
    assert (await client.get("/api/v1/logs/tail")).status_code == 404

    log_file.write_text(
        "".join(f"line {i}\n" for i in range(1, 6)), encoding="utf-8"
    )
    tail = await client.get("/api/v1/logs/tail", params={"lines": 2})
    assert tail.status_code == 200
    assert tail.text == "line 4\nline 5\n"

    too_few = await client.get("/api/v1/logs/tail", params={"lines": 0})
    assert too_few.status_code == 422

    export = await client.get("/api/v1/logs/export")
    assert export.status_code == 200
    assert export.text.startswith("line 1")

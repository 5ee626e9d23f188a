import asyncio
import inspect

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

pytest.importorskip("aiosqlite")

from codebase_testing_agent.schemas.project import ProjectCreate  # noqa: E402
from codebase_testing_agent.services.dispatcher import TaskDispatcher  # noqa: E402
from codebase_testing_agent.services.orchestrator import Orchestrator  # noqa: E402
from codebase_testing_agent.services.registry import AgentRegistry  # noqa: E402
from codebase_testing_agent.storage.models import Base  # noqa: E402
from codebase_testing_agent.storage.repository import SqlProjectStore  # noqa: E402


def _generated_cases(role, payload):
    category = payload["category"]
    return {
        "testCases": [
            {"name": f"{category} case {i}", "priority": "high", "steps": ["open"]}
            for i in range(2)
        ]
    }


def _script(role, payload):
    return {
        "script": f"test({payload['test_case']['name']!r})",
        "framework": payload["framework"],
    }


DEFAULT_RESPONSES = {
    "code_analysis": {
        "summary": "Small FastAPI service",
        "languages": {"python": 92, "toml": 8},
        "frameworks": ["fastapi", "sqlalchemy"],
        "linesOfCode": 1200,
    },
    "architecture_review": {"patterns": ["layered"], "strengths": ["typed"]},
    "risk_assessment": {
        "overallRisk": "high",
        "securityRisks": [{"title": "Unvalidated input"}],
        "recommendations": ["Validate payloads"],
    },
    "test_generation": _generated_cases,
    "test_script": _script,
    "execution": {"status": "passed", "duration": 120, "logs": ["ok"]},
}


class ScriptedBackend:
    """
    Agent backend answering from per-task handlers. A handler is a value, an
    exception instance to raise, or a callable ``(role, payload)``.
    """

    def __init__(self, **responses):
        self.responses = {**DEFAULT_RESPONSES, **responses}
        self.calls = []

    async def invoke_agent(self, role, payload):
        task = payload["task"]
        self.calls.append((role, task, payload))
        response = self.responses[task]
        if callable(response):
            response = response(role, payload)
            if inspect.isawaitable(response):
                response = await response
        if isinstance(response, BaseException):
            raise response
        return response

    def calls_for(self, task):
        return [call for call in self.calls if call[1] == task]


async def hang(role, payload):
    await asyncio.sleep(30)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orchestrator.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return SqlProjectStore(session_factory)


@pytest.fixture
def backend():
    return ScriptedBackend()


@pytest.fixture
def make_orchestrator(store):
    def _make(agent_backend, **dispatch_options):
        options = {
            "max_concurrency": 4,
            "timeout_seconds": 1.0,
            "max_attempts": 3,
            "backoff_seconds": 0,
            "unavailable_backoff_multiplier": 1,
            "cancel_poll_seconds": 0.05,
        }
        options.update(dispatch_options)
        registry = AgentRegistry(instances_per_role=4)
        dispatcher = TaskDispatcher(registry, agent_backend, **options)
        return Orchestrator(store, registry, dispatcher)

    return _make


@pytest.fixture
def orchestrator(make_orchestrator, backend):
    return make_orchestrator(backend)


async def create_project(orchestrator, name="Shop API"):
    result = await orchestrator.create_project(
        ProjectCreate(
            name=name,
            source_type="github",
            source_url="https://github.com/example/shop-api",
        )
    )
    return result.project_id

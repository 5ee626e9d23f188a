import pytest

from codebase_testing_agent.services.errors import AgentUnavailable
from codebase_testing_agent.services.registry import AgentRegistry
from codebase_testing_agent.storage.models import AgentRole, AgentStatus


def test_registry_seeds_one_agent_per_role():
    registry = AgentRegistry()
    agents = registry.list_agents()

    assert [agent.id for agent in agents] == [1, 2, 3, 4, 5]
    assert {agent.role for agent in agents} == set(AgentRole)
    assert all(agent.status is AgentStatus.READY for agent in agents)
    assert registry.get(2).name == "Code Analyzer Agent"


def test_acquire_and_release_transitions():
    registry = AgentRegistry(instances_per_role=2)

    first = registry.acquire(AgentRole.TEST)
    second = registry.acquire(AgentRole.TEST)
    assert first.id != second.id
    assert first.name.startswith("Test Generator Agent #")
    with pytest.raises(AgentUnavailable):
        registry.acquire(AgentRole.TEST)

    assert registry.release(first.id, ok=False) is True
    assert registry.get(first.id).status is AgentStatus.ERROR

    # An errored agent can be picked up again.
    again = registry.acquire(AgentRole.TEST)
    assert again.id == first.id
    assert registry.get(first.id).status is AgentStatus.BUSY

    assert registry.release(again.id, ok=True) is True
    assert registry.get(again.id).status is AgentStatus.READY


def test_release_of_idle_or_unknown_agent_is_ignored():
    registry = AgentRegistry()
    agent = registry.list_agents()[0]

    assert registry.release(agent.id, ok=False) is False
    assert registry.get(agent.id).status is AgentStatus.READY
    assert registry.release(999, ok=True) is False
    assert registry.get(999) is None


def test_listed_agents_are_copies():
    registry = AgentRegistry()
    listed = registry.list_agents()[0]
    listed.status = AgentStatus.BUSY

    assert registry.get(listed.id).status is AgentStatus.READY


def test_supervisor_is_listed_but_never_dispatched():
    registry = AgentRegistry()
    supervisor = next(
        agent for agent in registry.list_agents() if agent.role is AgentRole.SUPERVISOR
    )

    assert not supervisor.dispatchable
    assert all(
        agent.dispatchable
        for agent in registry.list_agents()
        if agent.role is not AgentRole.SUPERVISOR
    )
    with pytest.raises(ValueError):
        registry.acquire(AgentRole.SUPERVISOR)
    assert registry.get(supervisor.id).status is AgentStatus.READY

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional

from codebase_testing_agent.services.errors import AgentUnavailable
from codebase_testing_agent.storage.models import AgentRole, AgentStatus

logger = logging.getLogger(__name__)

ROLE_PROFILES: Dict[AgentRole, tuple] = {
    AgentRole.SUPERVISOR: (
        "Supervisor Agent",
        ["workflow_coordination", "stage_planning", "result_review"],
    ),
    AgentRole.ANALYZER: (
        "Code Analyzer Agent",
        ["language_detection", "framework_detection", "architecture_review"],
    ),
    AgentRole.RISK: (
        "Risk Assessment Agent",
        ["security_scanning", "performance_review", "recommendations"],
    ),
    AgentRole.TEST: (
        "Test Generator Agent",
        ["test_case_generation", "test_script_generation", "multi_framework"],
    ),
    AgentRole.ENVIRONMENT: (
        "Environment Agent",
        ["environment_setup", "test_execution", "result_collection"],
    ),
}

# Listed for visibility; no stage dispatches to these roles.
CATALOGUE_ONLY_ROLES = frozenset({AgentRole.SUPERVISOR})


@dataclass
class Agent:
    id: int
    name: str
    role: AgentRole
    status: AgentStatus = AgentStatus.READY
    capabilities: List[str] = field(default_factory=list)
    last_activity: Optional[datetime] = None
    dispatchable: bool = True


class AgentRegistry:
    """
    In-process catalogue of agent workers keyed by id.

    Status changes are compare-and-set: an agent moves ready|error -> busy on
    acquire and busy -> ready|error on release. Status only reflects the most
    recent dispatch outcome.
    """

    def __init__(self, instances_per_role: int = 1):
        self._lock = threading.Lock()
        self._agents: Dict[int, Agent] = {}
        next_id = 1
        for role, (name, capabilities) in ROLE_PROFILES.items():
            for index in range(max(1, instances_per_role)):
                label = name if instances_per_role <= 1 else f"{name} #{index + 1}"
                self._agents[next_id] = Agent(
                    id=next_id,
                    name=label,
                    role=role,
                    capabilities=list(capabilities),
                    dispatchable=role not in CATALOGUE_ONLY_ROLES,
                )
                next_id += 1
        logger.debug("Agent registry seeded with %s agent(s)", len(self._agents))

    def list_agents(self) -> List[Agent]:
        with self._lock:
            return [replace(agent) for _, agent in sorted(self._agents.items())]

    def get(self, agent_id: int) -> Optional[Agent]:
        with self._lock:
            agent = self._agents.get(agent_id)
            return replace(agent) if agent else None

    def acquire(self, role: AgentRole) -> Agent:
        """Claim an idle agent of ``role``; raises AgentUnavailable if none."""
        if role in CATALOGUE_ONLY_ROLES:
            raise ValueError(f"{role.value} agents are not dispatched")
        with self._lock:
            for agent_id in sorted(self._agents):
                agent = self._agents[agent_id]
                if agent.role is role and agent.status in (
                    AgentStatus.READY,
                    AgentStatus.ERROR,
                ):
                    agent.status = AgentStatus.BUSY
                    agent.last_activity = datetime.now(timezone.utc)
                    logger.debug("Agent %s (%s) acquired", agent_id, role.value)
                    return replace(agent)
        raise AgentUnavailable(role.value)

    def release(self, agent_id: int, ok: bool) -> bool:
        """
        Return a busy agent to ready (ok) or error. Returns False when the
        agent was not busy, leaving it untouched.
        """
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None or agent.status is not AgentStatus.BUSY:
                logger.warning("Ignoring release of agent %s: not busy", agent_id)
                return False
            agent.status = AgentStatus.READY if ok else AgentStatus.ERROR
            agent.last_activity = datetime.now(timezone.utc)
            return True

import logging
from typing import List

from fastapi import APIRouter, Depends

from codebase_testing_agent.api.dependencies import get_orchestrator
from codebase_testing_agent.schemas.agent import AgentRead
from codebase_testing_agent.services.orchestrator import Orchestrator

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/", response_model=List[AgentRead])
async def list_agents(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """
    Registered agent workers with the outcome of their most recent dispatch.
    """
    agents = orchestrator.list_agents()
    logger.debug("Listing %s agent(s)", len(agents))
    return agents

import json
import logging
from typing import Any, Dict, Protocol

from codebase_testing_agent.storage.models import AgentRole
from .llm_client import call_llm
from .prompt_loader import load_agent_prompt

logger = logging.getLogger(__name__)


class AgentBackend(Protocol):
    """Anything that can run one agent invocation and return its raw output."""

    async def invoke_agent(self, role: AgentRole, payload: Dict[str, Any]) -> Any:
        ...


class LLMAgentBackend:
    """Runs every agent role as a chat completion with per-role prompt files."""

    async def invoke_agent(self, role: AgentRole, payload: Dict[str, Any]) -> str:
        task = payload.get("task", "default")
        system_prompt = load_agent_prompt(role.value, "system_prompt.md")
        user_template = load_agent_prompt(role.value, f"user_prompt_{task}.md")
        context = json.dumps(payload, indent=2, sort_keys=True, default=str)
        if user_template:
            user_prompt = user_template.format(context=context)
        else:
            user_prompt = context

        logger.debug(
            "Invoking %s agent for task %s (prompt_length=%s)",
            role.value,
            task,
            len(user_prompt),
        )
        content = await call_llm(system_prompt=system_prompt, user_prompt=user_prompt)
        logger.info(
            "%s agent response for task %s: %s chars; preview=%r",
            role.value,
            task,
            len(content),
            (content[:300] + "…") if len(content) > 300 else content,
        )
        return content

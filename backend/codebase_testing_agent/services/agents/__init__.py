"""
Agent-facing service layer.

Every agent role (supervisor, analyzer, risk, test, environment) runs through
an AgentBackend:
- AgentBackend: protocol the dispatcher invokes, one call per sub-task
- LLMAgentBackend: chat completion per role with prompts under services/prompts
- call_llm: thin AsyncOpenAI wrapper that maps retryable failures
"""

from .backend import AgentBackend, LLMAgentBackend
from .llm_client import call_llm
from .prompt_loader import extract_json_payload, load_agent_prompt

__all__ = [
    "AgentBackend",
    "LLMAgentBackend",
    "call_llm",
    "extract_json_payload",
    "load_agent_prompt",
]

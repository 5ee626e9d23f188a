import logging
from typing import Optional

import openai
from openai import AsyncOpenAI

from codebase_testing_agent.services.errors import TransientError
from codebase_testing_agent.utils.config import settings

logger = logging.getLogger(__name__)

_client: Optional[AsyncOpenAI] = None

# Failures worth another attempt; anything else from the SDK propagates as is.
TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)


def get_client() -> AsyncOpenAI:
    """
    Lazily initialize and cache the AsyncOpenAI client shared by all agent roles.
    """
    global _client
    if _client is None:
        _client = AsyncOpenAI(
            api_key=settings.llm.api_key,
            base_url=settings.llm.base_url,
            # Retries are owned by the dispatcher.
            max_retries=0,
        )
        logger.debug(
            "Agents LLM client initialized (base_url=%s, model=%s)",
            settings.llm.base_url,
            settings.llm.model_name,
        )
    return _client


async def call_llm(system_prompt: str, user_prompt: str) -> str:
    """
    Call the configured chat completion endpoint with optional system + user prompts.
    Returns the raw message content string. Connection, timeout, rate-limit and
    5xx failures are raised as TransientError.
    """
    client = get_client()

    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": user_prompt})

    try:
        completion = await client.chat.completions.create(
            model=settings.llm.model_name,
            messages=messages,
        )
    except TRANSIENT_ERRORS as exc:
        logger.warning("LLM call failed transiently: %s", exc)
        raise TransientError(str(exc)) from exc

    content = completion.choices[0].message.content or ""
    logger.debug("LLM call succeeded, content_length=%s", len(content))
    return content

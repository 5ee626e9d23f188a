import logging
import os
from functools import lru_cache
from pathlib import Path

import toml
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

SETTINGS_FILE = os.getenv("APP_SETTINGS_FILE", "config/settings.toml")


class LLMSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="APP_LLM_")

    api_key: str = "placeholder"
    base_url: str = "placeholder"
    model_name: str = "placeholder"


class DBSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="APP_DB_")

    url: str = "sqlite+aiosqlite:///./codebase_testing_agent.db"
    echo: bool = False


class RedisSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="APP_REDIS_")

    host: str = "localhost"
    port: int = 6379


class DispatchSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="APP_DISPATCH_")

    # Ceiling shared by every in-flight agent invocation across all projects.
    max_concurrency: int = 4
    timeout_seconds: float = 120.0
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    unavailable_backoff_multiplier: float = 4.0
    # How often a running stage looks for a cancel requested by another process.
    cancel_poll_seconds: float = 1.0


class AgentSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="APP_AGENTS_")

    instances_per_role: int = 4


class Settings(BaseSettings):
    database: DBSettings = Field(default_factory=DBSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    agents: AgentSettings = Field(default_factory=AgentSettings)

    @model_validator(mode="after")
    def _enough_agents_for_fan_out(self):
        # Agents are claimed inside the concurrency slot, so a smaller pool
        # turns same-role fan-out into AgentUnavailable retries.
        if self.agents.instances_per_role < self.dispatch.max_concurrency:
            raise ValueError(
                f"agents.instances_per_role ({self.agents.instances_per_role}) "
                f"must be at least dispatch.max_concurrency "
                f"({self.dispatch.max_concurrency})"
            )
        return self


@lru_cache()
def get_settings() -> Settings:
    """Loads settings from the config file, falling back to defaults."""
    path = Path(SETTINGS_FILE)
    if not path.exists():
        logger.warning("Settings file %s not found; using defaults", path)
        return Settings()

    with open(path, "r") as f:
        data = toml.load(f)
    logger.debug("Loaded settings from %s with sections=%s", path, list(data.keys()))
    return Settings(**data)


settings = get_settings()

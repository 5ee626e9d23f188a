from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from codebase_testing_agent.storage.models import AgentRole, AgentStatus


class AgentRead(BaseModel):
    """A registered agent worker and the outcome of its most recent dispatch."""

    id: int
    name: str
    role: AgentRole
    status: AgentStatus
    capabilities: List[str] = Field(default_factory=list)
    last_activity: Optional[datetime] = None
    dispatchable: bool = True

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    @field_validator("role", "status", mode="before")
    def _normalize_enums(cls, v):
        if isinstance(v, (AgentRole, AgentStatus)):
            return v.value
        return v

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from codebase_testing_agent.storage.models import ProjectAnalysisStatus


class ProjectBase(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    # Where the code comes from, e.g. "github", "upload", "drive".
    source_type: str = "unknown"
    source_url: Optional[str] = None
    repository_data: Optional[Dict[str, Any]] = None


class ProjectCreate(ProjectBase):
    pass


class ProjectRead(ProjectBase):
    id: int
    analysis_status: ProjectAnalysisStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    # Accept the ORM enum and coerce to its string value
    @field_validator("analysis_status", mode="before")
    def _normalize_status(cls, v):
        if isinstance(v, ProjectAnalysisStatus):
            return v.value
        return v

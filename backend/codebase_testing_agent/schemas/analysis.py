from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from codebase_testing_agent.storage.models import AnalysisKind, AnalysisStatus


class AnalysisRead(BaseModel):
    id: int
    project_id: int
    agent_id: Optional[int] = None
    kind: AnalysisKind
    status: AnalysisStatus
    results: Optional[Any] = None
    test_case_id: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    @field_validator("kind", "status", mode="before")
    def _normalize_enums(cls, v):
        if isinstance(v, (AnalysisKind, AnalysisStatus)):
            return v.value
        return v

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from codebase_testing_agent.storage.models import TestCaseStatus

OutcomeStatusLiteral = Literal["pending", "running", "passed", "failed"]


class TestCaseRead(BaseModel):
    __test__ = False

    id: int
    project_id: int
    name: str
    description: Optional[str] = None
    type: str
    priority: str
    framework: str
    category: Optional[str] = None
    status: TestCaseStatus
    execution_time: Optional[int] = None
    results: Optional[Any] = None
    last_reported_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    @field_validator("status", mode="before")
    def _normalize_status(cls, v):
        if isinstance(v, TestCaseStatus):
            return v.value
        return v


class OutcomeIn(BaseModel):
    """An execution outcome reported for a single test case."""

    status: OutcomeStatusLiteral
    execution_time: Optional[int] = Field(default=None, ge=0)
    results: Optional[dict] = None
    reported_at: Optional[datetime] = None


class OutcomeResult(BaseModel):
    applied: bool
    test_case: TestCaseRead


class OutcomeBatchResult(BaseModel):
    applied: int = 0
    discarded: int = 0
    dropped: int = 0


class TestGenerationRequest(BaseModel):
    __test__ = False

    categories: List[str] = Field(default_factory=lambda: ["functional"])
    complexity: Literal["basic", "standard", "comprehensive"] = "standard"


class ScriptGenerationRequest(BaseModel):
    framework: Optional[str] = None


class EstimateRead(BaseModel):
    categories: List[str]
    complexity: str
    estimated_count: int

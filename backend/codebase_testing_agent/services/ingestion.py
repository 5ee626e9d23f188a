"""
Validation of every record that crosses into the orchestrator from outside:
agent payloads and externally reported execution outcomes.

Malformed fields are replaced by named fallbacks instead of failing the whole
record. Only a record without a usable identifier is dropped, and batches
report how many were dropped.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import (
    Annotated,
    Any,
    Dict,
    Generic,
    List,
    Literal,
    Optional,
    Type,
    TypeVar,
    Union,
)

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from codebase_testing_agent.services.agents.prompt_loader import safe_json_loads
from codebase_testing_agent.services.errors import ValidationError

logger = logging.getLogger(__name__)

UNNAMED_TEST = "Unnamed Test"
UNKNOWN = "unknown"
DEFAULT_PRIORITY = "medium"

PRIORITIES = ("low", "medium", "high", "critical")
OUTCOME_STATUSES = ("pending", "running", "passed", "failed")


def _text_or(value: Any, default: Optional[str]) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _text(default: Optional[str]) -> BeforeValidator:
    def _coerce(value: Any) -> Optional[str]:
        return _text_or(value, default)

    return BeforeValidator(_coerce)


def _positive_id(value: Any) -> int:
    # bool is an int subclass; True must not become id 1.
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"id must be a positive integer, got {value!r}")
    return value


def _optional_millis(value: Any) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if value < 0:
        return None
    return int(round(value))


def _optional_dict(value: Any) -> Optional[Dict[str, Any]]:
    return value if isinstance(value, dict) else None


def _str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str) and item.strip()]


def _dict_list(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _priority(value: Any) -> str:
    text = _text_or(value, DEFAULT_PRIORITY).lower()
    return text if text in PRIORITIES else DEFAULT_PRIORITY


RecordId = Annotated[int, BeforeValidator(_positive_id)]
OptionalText = Annotated[Optional[str], _text(None)]
OptionalMillis = Annotated[Optional[int], BeforeValidator(_optional_millis)]
OptionalDict = Annotated[Optional[Dict[str, Any]], BeforeValidator(_optional_dict)]
StrList = Annotated[List[str], BeforeValidator(_str_list)]
DictList = Annotated[List[Dict[str, Any]], BeforeValidator(_dict_list)]
Priority = Annotated[str, BeforeValidator(_priority)]


class _Lenient(BaseModel):
    """Accepts snake_case or camelCase keys and ignores unknown ones."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


R = TypeVar("R", bound=BaseModel)


@dataclass
class IngestedBatch(Generic[R]):
    records: List[R] = field(default_factory=list)
    dropped: int = 0


def ingest_record(model: Type[R], raw: Any) -> Optional[R]:
    """Validate one raw record; returns None when it has to be dropped."""
    if not isinstance(raw, dict):
        return None
    try:
        return model.model_validate(raw)
    except PydanticValidationError as exc:
        logger.debug(
            "Dropping %s record: %s", model.__name__, exc.errors(include_url=False)
        )
        return None


def ingest_batch(model: Type[R], raws: Any) -> IngestedBatch[R]:
    """
    Validate a batch of raw records. A non-list input is treated as a single
    unusable record; None is an empty batch.
    """
    batch: IngestedBatch[R] = IngestedBatch()
    if raws is None:
        return batch
    if not isinstance(raws, (list, tuple)):
        batch.dropped = 1
        return batch

    for raw in raws:
        record = ingest_record(model, raw)
        if record is None:
            batch.dropped += 1
        else:
            batch.records.append(record)

    if batch.dropped:
        logger.info(
            "Ingested %s %s record(s), dropped %s",
            len(batch.records),
            model.__name__,
            batch.dropped,
        )
    return batch


# ---------------------------------------------------------------------------
# Execution outcomes
# ---------------------------------------------------------------------------


class ExecutionOutcome(_Lenient):
    """A status report for one test case, ordered by ``reported_at``."""

    test_case_id: RecordId
    status: Literal["pending", "running", "passed", "failed"]
    execution_time: OptionalMillis = None
    results: OptionalDict = None
    reported_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    def _normalize_status(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        if hasattr(v, "value"):
            return v.value
        return v

    @field_validator("reported_at", mode="before")
    def _normalize_reported_at(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return datetime.fromtimestamp(v, tz=timezone.utc)
        return v

    @model_validator(mode="after")
    def _default_reported_at(self):
        if self.reported_at is None:
            self.reported_at = datetime.now(timezone.utc)
        elif self.reported_at.tzinfo is None:
            self.reported_at = self.reported_at.replace(tzinfo=timezone.utc)
        else:
            # Stored columns keep wall-clock digits only, so offsets must go.
            self.reported_at = self.reported_at.astimezone(timezone.utc)
        return self


def ingest_outcomes(raws: Any) -> IngestedBatch[ExecutionOutcome]:
    return ingest_batch(ExecutionOutcome, raws)


# ---------------------------------------------------------------------------
# Agent payloads
# ---------------------------------------------------------------------------


class CodeAnalysisPayload(_Lenient):
    kind: Literal["code_analysis"] = "code_analysis"
    summary: OptionalText = None
    languages: OptionalDict = None
    frameworks: StrList = Field(default_factory=list)
    complexity: OptionalDict = None
    lines_of_code: OptionalMillis = None
    files: OptionalMillis = None
    test_coverage: Optional[float] = None

    @field_validator("test_coverage", mode="before")
    def _coverage(cls, v):
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return None
        return float(v)


class ArchitectureReviewPayload(_Lenient):
    kind: Literal["architecture_review"] = "architecture_review"
    summary: OptionalText = None
    patterns: StrList = Field(default_factory=list)
    structure: StrList = Field(default_factory=list)
    strengths: StrList = Field(default_factory=list)
    weaknesses: StrList = Field(default_factory=list)


class RiskAssessmentPayload(_Lenient):
    kind: Literal["risk_assessment"] = "risk_assessment"
    overall_risk: Priority = DEFAULT_PRIORITY
    security_risks: DictList = Field(default_factory=list)
    performance_risks: DictList = Field(default_factory=list)
    recommendations: StrList = Field(default_factory=list)


class TestCaseDraft(_Lenient):
    """A generated test case before it is persisted."""

    __test__ = False

    name: Annotated[str, _text(UNNAMED_TEST)] = UNNAMED_TEST
    description: OptionalText = None
    type: Annotated[str, _text(UNKNOWN)] = UNKNOWN
    priority: Priority = DEFAULT_PRIORITY
    framework: Annotated[str, _text(UNKNOWN)] = UNKNOWN
    category: OptionalText = None
    steps: StrList = Field(default_factory=list)
    expected_outcome: OptionalText = None


class TestGenerationPayload(_Lenient):
    __test__ = False

    kind: Literal["test_generation"] = "test_generation"
    test_cases: List[TestCaseDraft] = Field(default_factory=list)
    test_strategy: OptionalDict = None
    dropped: int = 0

    @model_validator(mode="before")
    def _usable_drafts(cls, data):
        # A bare list is accepted as the list of drafts.
        if isinstance(data, list):
            data = {"test_cases": data}
        if not isinstance(data, dict):
            return data
        raw_cases = data.get("test_cases", data.get("testCases", data.get("cases")))
        if not isinstance(raw_cases, list):
            raw_cases = []
        drafts = [item for item in raw_cases if isinstance(item, dict)]
        data = {k: v for k, v in data.items() if k not in ("testCases", "cases")}
        data["test_cases"] = drafts
        data["dropped"] = len(raw_cases) - len(drafts)
        return data

    @model_validator(mode="after")
    def _require_cases(self):
        if not self.test_cases:
            raise ValueError("no usable test cases in generation payload")
        return self


class TestScriptPayload(_Lenient):
    __test__ = False

    kind: Literal["test_script"] = "test_script"
    script: str
    framework: Annotated[str, _text(UNKNOWN)] = UNKNOWN
    language: OptionalText = None
    file_name: OptionalText = None

    @field_validator("script", mode="before")
    def _require_script(cls, v):
        if not isinstance(v, str) or not v.strip():
            raise ValueError("script text is required")
        return v


class ExecutionPayload(_Lenient):
    kind: Literal["execution"] = "execution"
    status: Literal["passed", "failed"]
    duration: OptionalMillis = None
    framework: Annotated[str, _text(UNKNOWN)] = UNKNOWN
    logs: StrList = Field(default_factory=list)
    errors: StrList = Field(default_factory=list)
    screenshots: StrList = Field(default_factory=list)

    @field_validator("status", mode="before")
    def _normalize_status(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v


AgentPayload = Union[
    CodeAnalysisPayload,
    ArchitectureReviewPayload,
    RiskAssessmentPayload,
    TestGenerationPayload,
    TestScriptPayload,
    ExecutionPayload,
]

PAYLOAD_MODELS: Dict[str, Type[BaseModel]] = {
    "code_analysis": CodeAnalysisPayload,
    "architecture_review": ArchitectureReviewPayload,
    "risk_assessment": RiskAssessmentPayload,
    "test_generation": TestGenerationPayload,
    "test_script": TestScriptPayload,
    "execution": ExecutionPayload,
}


def parse_payload(kind: str, raw: Any) -> AgentPayload:
    """
    Turn raw agent output (a dict, or LLM text with embedded JSON) into the
    payload variant for ``kind``. Raises ValidationError when unusable.
    """
    model = PAYLOAD_MODELS.get(kind)
    if model is None:
        raise ValidationError(f"Unknown payload kind: {kind}")

    data = safe_json_loads(raw) if isinstance(raw, str) else raw
    # Generation payloads may arrive as a bare list of drafts.
    accepts_list = model is TestGenerationPayload and isinstance(data, list)
    if not isinstance(data, dict) and not accepts_list:
        raise ValidationError(f"{kind} payload is not a JSON object")

    if isinstance(data, dict):
        # The tag is implied by the requested kind.
        data = {k: v for k, v in data.items() if k != "kind"}

    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid {kind} payload: {exc.errors(include_url=False)}"
        ) from exc

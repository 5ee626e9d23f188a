from datetime import datetime, timezone

import pytest

from codebase_testing_agent.services.errors import ValidationError
from codebase_testing_agent.services.ingestion import (
    UNKNOWN,
    UNNAMED_TEST,
    ExecutionOutcome,
    ingest_batch,
    ingest_outcomes,
    ingest_record,
    parse_payload,
)


def test_outcome_batch_drops_only_records_without_usable_id():
    raws = [
        {"testCaseId": 1, "status": "passed", "executionTime": 120},
        {"testCaseId": 2, "status": "failed", "executionTime": "slow"},
        {"testCaseId": 3, "status": "running", "results": ["not", "a", "dict"]},
        {"testCaseId": 4, "status": "pending", "extra": {"ignored": True}},
        {"test_case_id": 5, "status": " Passed ", "executionTime": -4},
        {"testCaseId": 6, "status": "failed", "results": {"errors": ["boom"]}},
        {"testCaseId": 7, "status": "passed", "reportedAt": 10},
        {"status": "passed"},
        {"testCaseId": "8", "status": "passed"},
        {"testCaseId": True, "status": "failed"},
    ]

    batch = ingest_outcomes(raws)

    assert batch.dropped == 3
    assert [outcome.test_case_id for outcome in batch.records] == list(range(1, 8))

    by_id = {outcome.test_case_id: outcome for outcome in batch.records}
    assert by_id[1].execution_time == 120
    assert by_id[2].execution_time is None
    assert by_id[3].results is None
    assert by_id[5].status == "passed"
    assert by_id[5].execution_time is None
    assert by_id[6].results == {"errors": ["boom"]}
    for outcome in batch.records:
        assert isinstance(outcome.test_case_id, int)
        assert outcome.reported_at.tzinfo is not None


def test_batch_input_shapes():
    assert ingest_outcomes(None).records == []
    assert ingest_outcomes(None).dropped == 0

    not_a_list = ingest_batch(ExecutionOutcome, {"testCaseId": 1, "status": "passed"})
    assert not_a_list.records == []
    assert not_a_list.dropped == 1

    mixed = ingest_outcomes([{"testCaseId": 1, "status": "passed"}, "garbage", None])
    assert len(mixed.records) == 1
    assert mixed.dropped == 2


def test_draft_fallbacks():
    payload = parse_payload(
        "test_generation",
        {
            "testCases": [
                {"name": "  ", "type": None, "priority": "urgent", "steps": [1, "a"]},
                {"name": 42, "framework": "", "priority": "HIGH"},
            ]
        },
    )
    blank, numeric = payload.test_cases

    assert blank.name == UNNAMED_TEST
    assert blank.type == UNKNOWN
    assert blank.priority == "medium"
    assert blank.steps == ["a"]
    assert blank.description is None
    assert numeric.name == UNNAMED_TEST
    assert numeric.framework == UNKNOWN
    assert numeric.priority == "high"


def test_outcome_offsets_are_converted_to_utc():
    outcome = ingest_record(
        ExecutionOutcome,
        {
            "testCaseId": 1,
            "status": "passed",
            "reportedAt": "2024-01-01T10:00:00+05:00",
        },
    )

    assert outcome.reported_at == datetime(2024, 1, 1, 5, tzinfo=timezone.utc)
    assert outcome.reported_at.utcoffset().total_seconds() == 0


def test_outcome_timestamps_are_normalized_to_utc():
    naive = ingest_record(
        ExecutionOutcome,
        {"testCaseId": 1, "status": "PASSED", "reportedAt": "2024-05-01T10:00:00"},
    )
    assert naive.status == "passed"
    assert naive.reported_at == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)

    epoch = ingest_record(
        ExecutionOutcome, {"test_case_id": 1, "status": "failed", "reported_at": 5}
    )
    assert epoch.reported_at == datetime.fromtimestamp(5, tz=timezone.utc)

    defaulted = ingest_record(
        ExecutionOutcome, {"test_case_id": 1, "status": "running"}
    )
    assert defaulted.reported_at.tzinfo is not None


def test_outcome_batch_drops_unknown_status():
    batch = ingest_outcomes(
        [
            {"test_case_id": 1, "status": "passed"},
            {"test_case_id": 2, "status": "exploded"},
            {"test_case_id": 0, "status": "failed"},
        ]
    )
    assert [outcome.test_case_id for outcome in batch.records] == [1]
    assert batch.dropped == 2


def test_parse_payload_from_llm_text():
    raw = (
        "Here is the analysis:\n```json\n"
        '{"summary": "ok", "frameworks": ["django", 1], "linesOfCode": 5400}\n```'
    )
    payload = parse_payload("code_analysis", raw)

    assert payload.kind == "code_analysis"
    assert payload.frameworks == ["django"]
    assert payload.lines_of_code == 5400


def test_parse_payload_generation_shapes():
    bare = parse_payload(
        "test_generation", [{"name": "A"}, "junk", {"title": "no name"}]
    )
    assert [draft.name for draft in bare.test_cases] == ["A", UNNAMED_TEST]
    assert bare.dropped == 1

    keyed = parse_payload("test_generation", {"cases": [{"name": "B"}]})
    assert [draft.name for draft in keyed.test_cases] == ["B"]

    with pytest.raises(ValidationError):
        parse_payload("test_generation", {"testCases": []})


def test_parse_payload_rejects_unusable_output():
    with pytest.raises(ValidationError):
        parse_payload("code_analysis", "I could not analyze this repository.")
    with pytest.raises(ValidationError):
        parse_payload("test_script", {"framework": "jest"})
    with pytest.raises(ValidationError):
        parse_payload("execution", {"status": "maybe"})
    with pytest.raises(ValidationError):
        parse_payload("unknown_kind", {})


def test_execution_payload_keeps_valid_fields():
    payload = parse_payload(
        "execution",
        {"status": " Failed ", "duration": -3, "errors": ["boom", None], "kind": "x"},
    )
    assert payload.status == "failed"
    assert payload.duration is None
    assert payload.errors == ["boom"]
    assert payload.framework == UNKNOWN

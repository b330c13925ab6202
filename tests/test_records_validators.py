from datetime import datetime, timedelta, timezone

import pytest

from conftest import PSEUDONYM_A, PSEUDONYM_HEX, make_record
from memory_layer.errors import ValidationIssue
from memory_layer.records import (
    ForgetRequest,
    MemoryContent,
    MemoryRecord,
    RecallQuery,
    allows_pii,
    create_memory_record,
    format_timestamp,
    is_memory_record,
    parse_timestamp,
    requires_aggregation,
)
from memory_layer.validators import validate_hashed_pseudonym, validate_record


@pytest.mark.parametrize("value", [PSEUDONYM_A, PSEUDONYM_HEX])
def test_valid_pseudonyms_pass(value):
    validate_hashed_pseudonym(value)


@pytest.mark.parametrize(
    "value, error_type",
    [
        ("", "required"),
        ("alice@example.com", "raw_pii"),
        ("hs_abc def", "raw_pii"),
        ("123-45-6789", "raw_pii"),
        ("hs_short", "invalid_format"),
        ("A1" * 32, "invalid_format"),
    ],
)
def test_invalid_pseudonyms_rejected(value, error_type):
    with pytest.raises(ValidationIssue) as exc_info:
        validate_hashed_pseudonym(value)
    assert exc_info.value.field == "hashed_pseudonym"
    assert exc_info.value.error_type == error_type


def test_validate_record_rejects_bad_consent_family():
    record = make_record(consent_family="everyone")
    with pytest.raises(ValidationIssue) as exc_info:
        validate_record(record)
    assert exc_info.value.field == "consent_family"


def test_validate_record_rejects_unknown_content_type():
    record = make_record(content_type="audio")
    with pytest.raises(ValidationIssue) as exc_info:
        validate_record(record)
    assert exc_info.value.field == "content.type"


def test_validate_record_rejects_negative_access_count():
    record = make_record()
    record.access_count = -1
    with pytest.raises(ValidationIssue):
        validate_record(record)


def test_consent_family_helpers():
    assert allows_pii("personal")
    assert not allows_pii("cohort")
    assert requires_aggregation("cohort")
    assert requires_aggregation("population")
    assert not requires_aggregation("personal")


def test_record_dict_conversion_keeps_utc_timestamps():
    record = make_record(expires_in_seconds=60, metadata={"source": "chat"})
    payload = record.to_dict()
    assert payload["created_at"].endswith("Z")
    assert "encryption_version" not in payload
    assert is_memory_record(payload)

    restored = MemoryRecord.from_dict(payload)
    assert restored == record


def test_is_memory_record_rejects_partial_payloads():
    payload = make_record().to_dict()
    payload.pop("audit_receipt_id")
    assert not is_memory_record(payload)
    assert not is_memory_record("not a dict")


def test_parse_timestamp_normalizes_to_utc():
    parsed = parse_timestamp("2025-01-01T12:00:00+02:00")
    assert parsed == datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc)
    assert format_timestamp(parsed) == "2025-01-01T10:00:00Z"
    with pytest.raises(ValidationIssue):
        parse_timestamp("yesterday", "since")


def test_create_memory_record_fills_defaults():
    record = create_memory_record(
        hashed_pseudonym=PSEUDONYM_A,
        content=MemoryContent(type="structured", data={"k": 1}),
        consent_family="cohort",
        consent_version="2.0",
    )
    assert record.id
    assert record.audit_receipt_id
    assert record.access_count == 0
    assert record.created_at == record.updated_at
    validate_record(record)


def test_copy_is_independent_of_original():
    record = make_record(data={"nested": [1, 2]})
    clone = record.copy()
    clone.content.data["nested"].append(3)
    assert record.content.data == {"nested": [1, 2]}


def test_is_expired_boundary():
    record = make_record(expires_in_seconds=10)
    assert not record.is_expired()
    assert record.is_expired(record.expires_at)
    assert record.is_expired(record.expires_at + timedelta(seconds=1))


def test_recall_query_requires_pseudonym_and_valid_sort():
    with pytest.raises(ValidationIssue):
        RecallQuery(hashed_pseudonym="")
    with pytest.raises(ValidationIssue):
        RecallQuery(hashed_pseudonym=PSEUDONYM_A, sort="sideways")
    with pytest.raises(ValidationIssue):
        RecallQuery(hashed_pseudonym=PSEUDONYM_A, limit=-1)


def test_forget_selector_precedence():
    assert ForgetRequest(id="r1", hashed_pseudonym=PSEUDONYM_A, session_id="s").selector() == ("id", "r1")
    assert ForgetRequest(hashed_pseudonym=PSEUDONYM_A, session_id="s").selector() == (
        "hashed_pseudonym",
        PSEUDONYM_A,
    )
    assert ForgetRequest(session_id="s").selector() == ("session_id", "s")
    with pytest.raises(ValidationIssue):
        ForgetRequest(reason="nothing selected").selector()

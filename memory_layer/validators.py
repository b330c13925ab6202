"""
Shared validation helpers for memory stores.
"""

from __future__ import annotations

import re

from memory_layer.errors import ValidationIssue
from memory_layer.records import CONSENT_FAMILIES, CONTENT_TYPES, MemoryContent, MemoryRecord

HASHED_PSEUDONYM_PATTERN = re.compile(r"^(hs_[A-Za-z0-9_-]{43}|[a-f0-9]{64})$")
SSN_PATTERN = re.compile(r"^\d{3}-\d{2}-\d{4}$")
WHITESPACE_PATTERN = re.compile(r"\s")


def validate_hashed_pseudonym(value: str) -> None:
    """Reject anything that looks like raw personal data instead of a hashed subject id."""
    if not isinstance(value, str) or not value:
        raise ValidationIssue(
            "hashed_pseudonym is required",
            field="hashed_pseudonym",
            error_type="required",
        )
    if "@" in value:
        raise ValidationIssue(
            "Invalid hashed_pseudonym: contains @ symbol (possible raw email). Must be hashed.",
            field="hashed_pseudonym",
            error_type="raw_pii",
        )
    if WHITESPACE_PATTERN.search(value):
        raise ValidationIssue(
            "Invalid hashed_pseudonym: contains whitespace. Must be hashed identifier.",
            field="hashed_pseudonym",
            error_type="raw_pii",
        )
    if SSN_PATTERN.match(value):
        raise ValidationIssue(
            "Invalid hashed_pseudonym: matches SSN pattern. Must be hashed.",
            field="hashed_pseudonym",
            error_type="raw_pii",
        )
    if not HASHED_PSEUDONYM_PATTERN.match(value):
        raise ValidationIssue(
            "Invalid hashed_pseudonym format. Expected: hs_<base64url> or SHA-256 hex (64 chars)",
            field="hashed_pseudonym",
            error_type="invalid_format",
        )


def validate_consent_family(value: str) -> None:
    if not value:
        raise ValidationIssue("consent_family is required", field="consent_family", error_type="required")
    if value not in CONSENT_FAMILIES:
        raise ValidationIssue(
            f"consent_family must be one of [{', '.join(CONSENT_FAMILIES)}], got '{value}'",
            field="consent_family",
            error_type="invalid",
        )


def validate_content_type(value: str) -> None:
    if not value:
        raise ValidationIssue("content.type is required", field="content.type", error_type="required")
    if value not in CONTENT_TYPES:
        raise ValidationIssue(
            f"content.type must be one of [{', '.join(CONTENT_TYPES)}], got '{value}'",
            field="content.type",
            error_type="invalid",
        )


def validate_record(record: MemoryRecord) -> None:
    """Checks shared by every backend; runs before any I/O."""
    if not isinstance(record, MemoryRecord):
        raise ValidationIssue("record must be a MemoryRecord", field="record", error_type="invalid_type")
    if not isinstance(record.id, str) or not record.id:
        raise ValidationIssue("id is required", field="id", error_type="required")
    validate_hashed_pseudonym(record.hashed_pseudonym)
    if record.content is None:
        raise ValidationIssue("content is required", field="content", error_type="required")
    if not isinstance(record.content, MemoryContent):
        raise ValidationIssue("content must be a MemoryContent", field="content", error_type="invalid_type")
    validate_content_type(record.content.type)
    validate_consent_family(record.consent_family)
    if not record.consent_version:
        raise ValidationIssue("consent_version is required", field="consent_version", error_type="required")
    if record.consent_timestamp is None:
        raise ValidationIssue(
            "consent_timestamp is required",
            field="consent_timestamp",
            error_type="required",
        )
    if record.created_at is None or record.updated_at is None:
        raise ValidationIssue("created_at and updated_at are required", field="created_at", error_type="required")
    if isinstance(record.access_count, bool) or not isinstance(record.access_count, int) or record.access_count < 0:
        raise ValidationIssue(
            "access_count must be a non-negative integer",
            field="access_count",
            error_type="out_of_range",
        )

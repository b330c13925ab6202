"""
Memory record data model and operation request types.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from memory_layer.errors import ValidationIssue


class ConsentFamily(str, Enum):
    """
    Consent scope of a record.

    personal: subject-only access, pseudonymous identifiers only.
    cohort: group-level aggregated use, no direct identifiers.
    population: system-wide aggregated use, no direct identifiers.
    """

    personal = "personal"
    cohort = "cohort"
    population = "population"


class ContentType(str, Enum):
    text = "text"
    structured = "structured"
    embedding = "embedding"


CONSENT_FAMILIES = tuple(family.value for family in ConsentFamily)
CONTENT_TYPES = tuple(content_type.value for content_type in ContentType)


def allows_pii(family: str) -> bool:
    return family == ConsentFamily.personal.value


def requires_aggregation(family: str) -> bool:
    return family in {ConsentFamily.cohort.value, ConsentFamily.population.value}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any, field_name: str = "timestamp") -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValidationIssue(
                f"{field_name} must be an ISO-8601 timestamp",
                field=field_name,
                error_type="invalid_timestamp",
            ) from exc
        return as_utc(parsed)
    raise ValidationIssue(
        f"{field_name} must be an ISO-8601 timestamp",
        field=field_name,
        error_type="invalid_type",
    )


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return as_utc(value).isoformat().replace("+00:00", "Z")


@dataclass
class MemoryContent:
    type: str
    data: Any
    metadata: Optional[dict] = None

    def to_dict(self) -> dict:
        payload = {"type": self.type, "data": copy.deepcopy(self.data)}
        if self.metadata is not None:
            payload["metadata"] = copy.deepcopy(self.metadata)
        return payload

    @classmethod
    def from_dict(cls, payload: dict) -> "MemoryContent":
        if not isinstance(payload, dict):
            raise ValidationIssue("content must be an object", field="content", error_type="invalid_type")
        return cls(
            type=payload.get("type"),
            data=copy.deepcopy(payload.get("data")),
            metadata=copy.deepcopy(payload.get("metadata")),
        )


@dataclass
class MemoryRecord:
    id: str
    hashed_pseudonym: str
    content: MemoryContent
    consent_family: str
    consent_timestamp: datetime
    consent_version: str
    created_at: datetime
    updated_at: datetime
    audit_receipt_id: str
    session_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    access_count: int = 0
    encryption_version: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())

    def copy(self) -> "MemoryRecord":
        return replace(
            self,
            content=MemoryContent(
                type=self.content.type,
                data=copy.deepcopy(self.content.data),
                metadata=copy.deepcopy(self.content.metadata),
            ),
        )

    def utc_copy(self) -> "MemoryRecord":
        """Copy with every timestamp made timezone-aware UTC; naive values are read as UTC."""
        record = self.copy()
        record.consent_timestamp = as_utc(record.consent_timestamp)
        record.created_at = as_utc(record.created_at)
        record.updated_at = as_utc(record.updated_at)
        if record.expires_at is not None:
            record.expires_at = as_utc(record.expires_at)
        return record

    def to_dict(self) -> dict:
        payload = {
            "id": self.id,
            "hashed_pseudonym": self.hashed_pseudonym,
            "session_id": self.session_id,
            "content": self.content.to_dict(),
            "consent_family": self.consent_family,
            "consent_timestamp": format_timestamp(self.consent_timestamp),
            "consent_version": self.consent_version,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "expires_at": format_timestamp(self.expires_at),
            "access_count": self.access_count,
            "audit_receipt_id": self.audit_receipt_id,
        }
        if self.encryption_version is not None:
            payload["encryption_version"] = self.encryption_version
        return payload

    @classmethod
    def from_dict(cls, payload: dict) -> "MemoryRecord":
        if not is_memory_record(payload):
            raise ValidationIssue("payload is not a memory record", field="record", error_type="invalid_shape")
        return cls(
            id=payload["id"],
            hashed_pseudonym=payload["hashed_pseudonym"],
            session_id=payload.get("session_id"),
            content=MemoryContent.from_dict(payload["content"]),
            consent_family=payload["consent_family"],
            consent_timestamp=parse_timestamp(payload["consent_timestamp"], "consent_timestamp"),
            consent_version=payload["consent_version"],
            created_at=parse_timestamp(payload["created_at"], "created_at"),
            updated_at=parse_timestamp(payload["updated_at"], "updated_at"),
            expires_at=parse_timestamp(payload.get("expires_at"), "expires_at"),
            access_count=int(payload.get("access_count", 0)),
            audit_receipt_id=payload["audit_receipt_id"],
            encryption_version=payload.get("encryption_version"),
        )


def is_memory_record(obj: Any) -> bool:
    """Shape check for dict payloads coming from the HTTP layer or a backfill dump."""
    if not isinstance(obj, dict):
        return False
    string_fields = (
        "id",
        "hashed_pseudonym",
        "consent_family",
        "consent_timestamp",
        "consent_version",
        "created_at",
        "updated_at",
        "audit_receipt_id",
    )
    if any(not isinstance(obj.get(name), str) for name in string_fields):
        return False
    access_count = obj.get("access_count")
    if isinstance(access_count, bool) or not isinstance(access_count, int):
        return False
    return isinstance(obj.get("content"), dict)


def create_memory_record(
    hashed_pseudonym: str,
    content: MemoryContent,
    consent_family: str,
    consent_version: str,
    consent_timestamp: Optional[datetime] = None,
    session_id: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    record_id: Optional[str] = None,
    audit_receipt_id: Optional[str] = None,
) -> MemoryRecord:
    now = utcnow()
    return MemoryRecord(
        id=record_id or str(uuid.uuid4()),
        hashed_pseudonym=hashed_pseudonym,
        session_id=session_id,
        content=content,
        consent_family=consent_family,
        consent_timestamp=consent_timestamp or now,
        consent_version=consent_version,
        created_at=now,
        updated_at=now,
        expires_at=expires_at,
        access_count=0,
        audit_receipt_id=audit_receipt_id or str(uuid.uuid4()),
    )


def _normalize_time_window(query) -> None:
    for name in ("since", "until"):
        value = getattr(query, name)
        if isinstance(value, datetime):
            object.__setattr__(query, name, as_utc(value))


@dataclass(frozen=True)
class QueryFilters:
    hashed_pseudonym: Optional[str] = None
    session_id: Optional[str] = None
    consent_family: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    type: Optional[str] = None

    def __post_init__(self):
        _normalize_time_window(self)


@dataclass(frozen=True)
class RecallQuery:
    hashed_pseudonym: str
    session_id: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    type: Optional[str] = None
    limit: int = 100
    offset: int = 0
    sort: str = "desc"

    def __post_init__(self):
        if not isinstance(self.hashed_pseudonym, str) or not self.hashed_pseudonym:
            raise ValidationIssue(
                "hashed_pseudonym is required for recall",
                field="hashed_pseudonym",
                error_type="required",
            )
        if self.sort not in {"asc", "desc"}:
            raise ValidationIssue("sort must be 'asc' or 'desc'", field="sort", error_type="invalid")
        if self.limit < 0 or self.offset < 0:
            raise ValidationIssue(
                "limit and offset must be non-negative",
                field="limit",
                error_type="out_of_range",
            )
        _normalize_time_window(self)


@dataclass(frozen=True)
class ForgetRequest:
    id: Optional[str] = None
    hashed_pseudonym: Optional[str] = None
    session_id: Optional[str] = None
    reason: Optional[str] = None

    def selector(self) -> tuple[str, str]:
        """Return the single (column, value) pair used to pick records for deletion."""
        if self.id:
            return "id", self.id
        if self.hashed_pseudonym:
            return "hashed_pseudonym", self.hashed_pseudonym
        if self.session_id:
            return "session_id", self.session_id
        raise ValidationIssue(
            "forget request must specify id, hashed_pseudonym, or session_id",
            field="forget",
            error_type="required",
        )


@dataclass
class StorageStats:
    total_records: int = 0
    records_by_family: dict = field(default_factory=dict)
    storage_bytes: int = 0

    def to_dict(self) -> dict:
        return {
            "total_records": self.total_records,
            "records_by_family": dict(self.records_by_family),
            "storage_bytes": self.storage_bytes,
        }

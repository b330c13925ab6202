"""
In-process memory store.

Records live in a dict keyed by id with three secondary indexes (pseudonym,
session, consent family). Nothing survives a restart; use it for tests,
local development and as the primary side of a dual-write migration.
"""

from __future__ import annotations

import json
from collections import defaultdict
from datetime import datetime
from typing import Iterator, Optional

import memory_layer.config as config
from memory_layer.errors import error_category
from memory_layer.metrics import StorageMetrics
from memory_layer.records import (
    ForgetRequest,
    MemoryRecord,
    QueryFilters,
    RecallQuery,
    StorageStats,
    utcnow,
)
from memory_layer.storage.interface import MemoryStore
from memory_layer.validators import validate_record

logger = config.logger

IMMUTABLE_FIELDS = ("hashed_pseudonym", "consent_family", "consent_timestamp", "consent_version", "created_at")


def matches_time_window(record: MemoryRecord, since: Optional[datetime], until: Optional[datetime]) -> bool:
    if since is not None and record.created_at < since:
        return False
    if until is not None and record.created_at > until:
        return False
    return True


def effective_limit(limit: int) -> int:
    return limit or config.DEFAULT_RECALL_LIMIT


class InMemoryStore(MemoryStore):
    name = "memory"

    def __init__(self, metrics: Optional[StorageMetrics] = None):
        self._metrics = metrics or StorageMetrics()
        self._records: dict[str, MemoryRecord] = {}
        self._by_pseudonym: dict[str, set[str]] = defaultdict(set)
        self._by_session: dict[str, set[str]] = defaultdict(set)
        self._by_family: dict[str, set[str]] = defaultdict(set)

    # ------------------------------------------------------------------
    # index maintenance
    # ------------------------------------------------------------------

    def _index(self, record: MemoryRecord) -> None:
        self._by_pseudonym[record.hashed_pseudonym].add(record.id)
        if record.session_id:
            self._by_session[record.session_id].add(record.id)
        self._by_family[record.consent_family].add(record.id)

    @staticmethod
    def _discard(index: dict[str, set[str]], key: Optional[str], record_id: str) -> None:
        if key is None:
            return
        ids = index.get(key)
        if ids is None:
            return
        ids.discard(record_id)
        if not ids:
            del index[key]

    def _unindex(self, record: MemoryRecord) -> None:
        self._discard(self._by_pseudonym, record.hashed_pseudonym, record.id)
        self._discard(self._by_session, record.session_id, record.id)
        self._discard(self._by_family, record.consent_family, record.id)

    def _remove(self, record_id: str) -> bool:
        record = self._records.pop(record_id, None)
        if record is None:
            return False
        self._unindex(record)
        return True

    # ------------------------------------------------------------------
    # MemoryStore
    # ------------------------------------------------------------------

    async def store(self, record: MemoryRecord) -> MemoryRecord:
        validate_record(record)
        stored = record.utc_copy()
        existing = self._records.get(record.id)
        if existing is not None:
            for field_name in IMMUTABLE_FIELDS:
                setattr(stored, field_name, getattr(existing, field_name))
            self._unindex(existing)
        self._records[stored.id] = stored
        self._index(stored)
        return stored.copy()

    def _candidate_ids(
        self,
        hashed_pseudonym: Optional[str] = None,
        session_id: Optional[str] = None,
        consent_family: Optional[str] = None,
    ) -> set[str]:
        selected: Optional[set[str]] = None
        for index, key in (
            (self._by_pseudonym, hashed_pseudonym),
            (self._by_session, session_id),
            (self._by_family, consent_family),
        ):
            if key is None:
                continue
            ids = index.get(key, set())
            selected = set(ids) if selected is None else selected & ids
        if selected is None:
            return set(self._records)
        return selected

    def _increment_in_place(self, record_id: str) -> Optional[MemoryRecord]:
        record = self._records.get(record_id)
        if record is None:
            return None
        record.access_count += 1
        return record

    def _bump_access_count(self, record_id: str) -> None:
        """Increment access_count for a read; failures are logged and counted, never raised."""
        try:
            self._increment_in_place(record_id)
        except Exception as exc:
            self._metrics.increment("access_count_increment_failures", store=self.name)
            logger.warning(
                "access_count_increment_failed",
                extra={"record_id": record_id, "category": error_category(exc)},
            )

    async def recall(self, query: RecallQuery) -> list[MemoryRecord]:
        now = utcnow()
        candidates = []
        for record_id in self._candidate_ids(query.hashed_pseudonym, query.session_id):
            record = self._records.get(record_id)
            if record is None or record.is_expired(now):
                continue
            if query.type and record.content.type != query.type:
                continue
            if not matches_time_window(record, query.since, query.until):
                continue
            candidates.append(record)

        candidates.sort(key=lambda item: (item.created_at, item.id), reverse=query.sort == "desc")
        page = candidates[query.offset:query.offset + effective_limit(query.limit)]

        results = []
        for record in page:
            self._bump_access_count(record.id)
            results.append(self._records.get(record.id, record).copy())
        return results

    async def forget(self, request: ForgetRequest) -> list[str]:
        column, value = request.selector()
        if column == "id":
            candidates = [value] if value in self._records else []
        elif column == "hashed_pseudonym":
            candidates = list(self._by_pseudonym.get(value, set()))
        else:
            candidates = list(self._by_session.get(value, set()))

        deleted = [record_id for record_id in candidates if self._remove(record_id)]
        logger.info(
            "memory_records_forgotten",
            extra={"store": self.name, "selector": column, "deleted_count": len(deleted), "reason": request.reason},
        )
        return deleted

    async def count(self, filters: Optional[QueryFilters] = None) -> int:
        filters = filters or QueryFilters()
        now = utcnow()
        total = 0
        for record_id in self._candidate_ids(filters.hashed_pseudonym, filters.session_id, filters.consent_family):
            record = self._records.get(record_id)
            if record is None or record.is_expired(now):
                continue
            if filters.type and record.content.type != filters.type:
                continue
            if not matches_time_window(record, filters.since, filters.until):
                continue
            total += 1
        return total

    async def get(self, record_id: str) -> Optional[MemoryRecord]:
        record = self._records.get(record_id)
        return record.copy() if record is not None else None

    async def increment_access_count(self, record_id: str) -> Optional[MemoryRecord]:
        record = self._increment_in_place(record_id)
        return record.copy() if record is not None else None

    async def exists(self, record_id: str) -> bool:
        return record_id in self._records

    async def clear_expired(self) -> int:
        now = utcnow()
        expired = [record_id for record_id, record in self._records.items() if record.is_expired(now)]
        for record_id in expired:
            self._remove(record_id)
        if expired:
            logger.info("expired_records_cleared", extra={"store": self.name, "deleted_count": len(expired)})
        return len(expired)

    async def get_stats(self) -> StorageStats:
        storage_bytes = sum(
            len(json.dumps(record.to_dict()).encode("utf-8")) for record in self._records.values()
        )
        return StorageStats(
            total_records=len(self._records),
            records_by_family={family: len(ids) for family, ids in self._by_family.items()},
            storage_bytes=storage_bytes,
        )

    async def clear(self) -> None:
        self._records.clear()
        self._by_pseudonym.clear()
        self._by_session.clear()
        self._by_family.clear()

    # ------------------------------------------------------------------
    # diagnostics
    # ------------------------------------------------------------------

    def iterate_all(self) -> Iterator[MemoryRecord]:
        for record in list(self._records.values()):
            yield record.copy()

    def index_snapshot(self) -> dict:
        return {
            "hashed_pseudonym": {key: set(ids) for key, ids in self._by_pseudonym.items()},
            "session_id": {key: set(ids) for key, ids in self._by_session.items()},
            "consent_family": {key: set(ids) for key, ids in self._by_family.items()},
        }

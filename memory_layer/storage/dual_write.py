"""
Dual-write adapter used while migrating records between backends.

Writes go to the primary first and then to the secondary. Reads prefer the
primary and fall back to the secondary. Deletes are strict on both sides:
an erasure that cannot be confirmed on both stores raises a
ComplianceConsistencyError instead of returning quietly.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

import memory_layer.config as config
from memory_layer.config import DualWriteSettings
from memory_layer.errors import (
    ConfigurationError,
    ForgetCountMismatchError,
    SecondaryForgetError,
    ValidationIssue,
    error_category,
)
from memory_layer.metrics import StorageMetrics
from memory_layer.records import (
    ForgetRequest,
    MemoryRecord,
    QueryFilters,
    RecallQuery,
    StorageStats,
    utcnow,
)
from memory_layer.storage.backfill import BackfillConfig, BackfillReport, backfill_records, verify_backfill
from memory_layer.storage.in_memory import InMemoryStore
from memory_layer.storage.interface import MemoryStore

logger = config.logger

T = TypeVar("T")

STATUS_BOTH_SUCCESS = "both_success"
STATUS_PRIMARY_ONLY = "primary_only"
STATUS_FAILED = "failed"


class DualWriteStore(MemoryStore):
    name = "dual-write"

    def __init__(
        self,
        memory_store: MemoryStore,
        durable_store: MemoryStore,
        settings: Optional[DualWriteSettings] = None,
        metrics: Optional[StorageMetrics] = None,
    ):
        self._settings = settings or DualWriteSettings(enabled=True)
        self._metrics = metrics or StorageMetrics()
        self._memory_store, self._durable_store = memory_store, durable_store
        if self._settings.primary_store in {"durable", "postgres"}:
            self._primary, self._secondary = durable_store, memory_store
        else:
            self._primary, self._secondary = memory_store, durable_store
        logger.info(
            "dual_write_initialized",
            extra={
                "primary_store": self._primary.name,
                "secondary_store": self._secondary.name,
                "fail_fast": self._settings.fail_fast,
                "fallback_on_empty": self._settings.fallback_on_empty,
            },
        )

    @property
    def primary(self) -> MemoryStore:
        return self._primary

    @property
    def secondary(self) -> MemoryStore:
        return self._secondary

    async def backfill(self, backfill_config: Optional[BackfillConfig] = None) -> tuple[BackfillReport, dict]:
        """Copy the in-process member into the durable member, then compare their totals."""
        if not isinstance(self._memory_store, InMemoryStore):
            raise ConfigurationError("backfill needs an in-memory member as its source")
        report = await backfill_records(self._memory_store, self._durable_store, backfill_config, self._metrics)
        if report.dry_run:
            return report, {}
        return report, await verify_backfill(self._memory_store, self._durable_store)

    def status(self) -> dict:
        return {
            "primary_store": self._primary.name,
            "secondary_store": self._secondary.name,
            "fail_fast": self._settings.fail_fast,
            "fallback_on_empty": self._settings.fallback_on_empty,
            "secondary_timeout_seconds": self._settings.secondary_timeout_seconds,
        }

    async def _with_secondary_timeout(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self._settings.secondary_timeout_seconds)

    def _failure(self, reason: str, exc: BaseException, **extra) -> None:
        self._metrics.increment("dual_write_failures", reason=reason)
        logger.warning(
            "dual_write_failure",
            extra={"reason": reason, "category": error_category(exc), **extra},
        )

    def _record_lag(self, records: list[MemoryRecord]) -> None:
        if not records:
            return
        newest = max(record.created_at for record in records)
        lag_seconds = max(0.0, (utcnow() - newest).total_seconds())
        self._metrics.set_gauge("dual_write_lag_seconds", lag_seconds)

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    async def store(self, record: MemoryRecord) -> MemoryRecord:
        try:
            stored = await self._primary.store(record)
        except Exception as exc:
            self._metrics.increment("dual_write_records", status=STATUS_FAILED)
            self._failure("primary_store_failed", exc, record_id=getattr(record, "id", None))
            raise

        try:
            await self._with_secondary_timeout(self._secondary.store(record))
        except asyncio.TimeoutError as exc:
            self._secondary_write_failed("secondary_store_timeout", exc, record.id)
        except Exception as exc:
            self._secondary_write_failed("secondary_store_failed", exc, record.id)
        else:
            self._metrics.increment("dual_write_records", status=STATUS_BOTH_SUCCESS)
        return stored

    def _secondary_write_failed(self, reason: str, exc: Exception, record_id: str) -> None:
        self._metrics.increment("dual_write_records", status=STATUS_PRIMARY_ONLY)
        self._failure(reason, exc, record_id=record_id)
        if self._settings.fail_fast:
            raise exc

    async def forget(self, request: ForgetRequest) -> list[str]:
        """GDPR erasure. Strict on both stores regardless of fail_fast."""
        column, _ = request.selector()

        try:
            primary_deleted = await self._primary.forget(request)
        except Exception as exc:
            self._failure("forget_failed", exc, store="primary", selector=column)
            raise

        try:
            secondary_deleted = await self._with_secondary_timeout(self._secondary.forget(request))
        except ValidationIssue:
            raise
        except Exception as exc:
            self._metrics.increment("dual_write_failures", reason="secondary_forget_failed")
            logger.critical(
                "gdpr_secondary_forget_failed",
                extra={
                    "selector": column,
                    "primary_deleted": len(primary_deleted),
                    "category": error_category(exc),
                    "reason": request.reason,
                },
            )
            raise SecondaryForgetError(
                "Records were deleted from the primary store but not from the secondary store; "
                "manual remediation required",
                primary_deleted=len(primary_deleted),
            ) from exc

        if len(primary_deleted) != len(secondary_deleted):
            self._metrics.increment("dual_write_failures", reason="forget_mismatch")
            logger.critical(
                "gdpr_forget_count_mismatch",
                extra={
                    "selector": column,
                    "primary_deleted": len(primary_deleted),
                    "secondary_deleted": len(secondary_deleted),
                    "reason": request.reason,
                },
            )
            raise ForgetCountMismatchError(
                f"Forget deleted {len(primary_deleted)} records from primary but "
                f"{len(secondary_deleted)} from secondary; stores have diverged",
                primary_deleted=len(primary_deleted),
                secondary_deleted=len(secondary_deleted),
            )
        return primary_deleted

    async def increment_access_count(self, record_id: str) -> Optional[MemoryRecord]:
        updated = await self._primary.increment_access_count(record_id)
        try:
            await self._with_secondary_timeout(self._secondary.increment_access_count(record_id))
        except Exception as exc:
            self._failure("secondary_increment_failed", exc, record_id=record_id)
        return updated

    async def clear_expired(self) -> int:
        total = 0
        errors = []
        for role, store in (("primary", self._primary), ("secondary", self._secondary)):
            try:
                total += await store.clear_expired()
            except Exception as exc:
                self._failure("clear_expired_failed", exc, store=role)
                errors.append(exc)
        if len(errors) == 2:
            raise errors[0]
        return total

    async def clear(self) -> None:
        errors = []
        for role, store in (("primary", self._primary), ("secondary", self._secondary)):
            try:
                await store.clear()
            except Exception as exc:
                self._failure("clear_failed", exc, store=role)
                errors.append(exc)
        if errors:
            raise errors[0]

    async def close(self) -> None:
        for role, store in (("primary", self._primary), ("secondary", self._secondary)):
            try:
                await store.close()
            except Exception as exc:
                self._failure("close_failed", exc, store=role)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    async def recall(self, query: RecallQuery) -> list[MemoryRecord]:
        try:
            records = await self._primary.recall(query)
        except ValidationIssue:
            raise
        except Exception as exc:
            self._failure("recall_failed_using_fallback", exc)
        else:
            if records or not self._settings.fallback_on_empty:
                return records
            self._metrics.increment("dual_write_fallback_reads", reason="primary_empty")

        records = await self._secondary.recall(query)
        self._record_lag(records)
        return records

    async def get(self, record_id: str) -> Optional[MemoryRecord]:
        try:
            record = await self._primary.get(record_id)
        except Exception as exc:
            self._failure("get_failed_using_fallback", exc, record_id=record_id)
        else:
            if record is not None:
                return record
        return await self._secondary.get(record_id)

    async def exists(self, record_id: str) -> bool:
        try:
            if await self._primary.exists(record_id):
                return True
        except Exception as exc:
            self._failure("exists_failed_using_fallback", exc, record_id=record_id)
        return await self._secondary.exists(record_id)

    async def count(self, filters: Optional[QueryFilters] = None) -> int:
        try:
            return await self._primary.count(filters)
        except Exception as exc:
            self._failure("count_failed_using_fallback", exc)
        return await self._secondary.count(filters)

    async def get_stats(self) -> StorageStats:
        primary_stats = await self._primary.get_stats()
        try:
            secondary_stats = await self._secondary.get_stats()
        except Exception as exc:
            self._failure("secondary_stats_failed", exc)
            return primary_stats
        return StorageStats(
            total_records=max(primary_stats.total_records, secondary_stats.total_records),
            records_by_family=dict(primary_stats.records_by_family),
            storage_bytes=primary_stats.storage_bytes + secondary_stats.storage_bytes,
        )

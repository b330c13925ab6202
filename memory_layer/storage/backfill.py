"""
Copy records from the in-process store into the durable store.

The copy is an idempotent upsert, so it can be re-run after a partial
failure. Encryption is applied by the target store on write.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from typing import Optional

import memory_layer.config as config
from memory_layer.config import _get_bool, _get_float, _get_int
from memory_layer.errors import ValidationIssue, error_category
from memory_layer.metrics import StorageMetrics
from memory_layer.storage.in_memory import InMemoryStore
from memory_layer.storage.interface import MemoryStore
from memory_layer.validators import validate_consent_family

logger = config.logger


@dataclass(frozen=True)
class BackfillConfig:
    batch_size: int = 100
    dry_run: bool = False
    consent_family: Optional[str] = None
    pause_seconds: float = 0.1

    def __post_init__(self):
        if self.batch_size <= 0:
            raise ValidationIssue("batch_size must be positive", field="batch_size", error_type="out_of_range")
        if self.consent_family is not None:
            validate_consent_family(self.consent_family)


def load_backfill_config_from_env() -> BackfillConfig:
    return BackfillConfig(
        batch_size=_get_int("BACKFILL_BATCH_SIZE", 100),
        dry_run=_get_bool("BACKFILL_DRY_RUN", False),
        consent_family=os.environ.get("BACKFILL_CONSENT_FAMILY") or None,
        pause_seconds=_get_float("BACKFILL_PAUSE_SECONDS", 0.1),
    )


@dataclass
class BackfillReport:
    total_source: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    failed_ids: list = field(default_factory=list)
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> dict:
        return {
            "total_source": self.total_source,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "failed_ids": list(self.failed_ids),
            "dry_run": self.dry_run,
        }


async def backfill_records(
    source: InMemoryStore,
    target: MemoryStore,
    backfill_config: Optional[BackfillConfig] = None,
    metrics: Optional[StorageMetrics] = None,
) -> BackfillReport:
    backfill_config = backfill_config or BackfillConfig()
    metrics = metrics or StorageMetrics()

    records = list(source.iterate_all())
    if backfill_config.consent_family:
        records = [record for record in records if record.consent_family == backfill_config.consent_family]

    report = BackfillReport(total_source=len(records), dry_run=backfill_config.dry_run)
    batch_size = backfill_config.batch_size
    batch_total = (len(records) + batch_size - 1) // batch_size
    logger.info(
        "backfill_started",
        extra={
            "record_count": len(records),
            "batch_size": batch_size,
            "dry_run": backfill_config.dry_run,
            "consent_family": backfill_config.consent_family,
        },
    )

    for batch_index, start in enumerate(range(0, len(records), batch_size), start=1):
        batch = records[start:start + batch_size]
        logger.info("backfill_batch", extra={"batch": batch_index, "batch_total": batch_total, "size": len(batch)})

        for record in batch:
            report.processed += 1
            if backfill_config.dry_run:
                report.skipped += 1
                continue
            try:
                await target.store(record)
            except Exception as exc:
                report.failed += 1
                report.failed_ids.append(record.id)
                metrics.increment("backfill_failures", reason=error_category(exc))
                logger.error(
                    "backfill_record_failed",
                    extra={"record_id": record.id, "category": error_category(exc)},
                )
                continue
            report.succeeded += 1
            metrics.increment("backfill_records", status="success")

        if start + batch_size < len(records) and backfill_config.pause_seconds > 0:
            await asyncio.sleep(backfill_config.pause_seconds)

    log = logger.warning if report.failed else logger.info
    log("backfill_complete", extra=report.to_dict())
    return report


async def verify_backfill(source: MemoryStore, target: MemoryStore) -> dict:
    """Compare record totals and per-family counts between the two stores."""
    source_stats = await source.get_stats()
    target_stats = await target.get_stats()
    result = {
        "match": source_stats.total_records == target_stats.total_records,
        "source": source_stats.to_dict(),
        "target": target_stats.to_dict(),
    }
    if result["match"]:
        logger.info("backfill_verified", extra={"total_records": source_stats.total_records})
    else:
        logger.warning(
            "backfill_count_mismatch",
            extra={"source_total": source_stats.total_records, "target_total": target_stats.total_records},
        )
    return result

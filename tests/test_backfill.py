import pytest

from conftest import PSEUDONYM_A, make_record
from memory_layer.errors import StorageUnavailableError, ValidationIssue
from memory_layer.records import RecallQuery
from memory_layer.storage.backfill import (
    BackfillConfig,
    backfill_records,
    load_backfill_config_from_env,
    verify_backfill,
)
from memory_layer.storage.in_memory import InMemoryStore


class RejectingStore(InMemoryStore):
    def __init__(self, reject_ids, **kwargs):
        super().__init__(**kwargs)
        self.reject_ids = set(reject_ids)

    async def store(self, record):
        if record.id in self.reject_ids:
            raise StorageUnavailableError("write rejected")
        return await super().store(record)


async def _seed(source: InMemoryStore, count: int, family: str = "personal", prefix: str = "rec"):
    for index in range(count):
        await source.store(make_record(record_id=f"{prefix}-{index}", consent_family=family))


async def test_backfill_copies_every_record_in_batches(memory_store, metrics):
    await _seed(memory_store, 7)
    target = InMemoryStore()

    report = await backfill_records(memory_store, target, BackfillConfig(batch_size=3, pause_seconds=0), metrics)

    assert report.ok
    assert report.succeeded == 7
    assert report.processed == 7
    assert await target.count() == 7
    assert metrics.counter("backfill_records", status="success") == 7


async def test_backfill_is_idempotent(memory_store, db_settings, metrics):
    from conftest import build_durable_store

    await _seed(memory_store, 4)
    durable = build_durable_store(db_settings, metrics)
    try:
        config = BackfillConfig(batch_size=2, pause_seconds=0)
        await backfill_records(memory_store, durable, config, metrics)
        second = await backfill_records(memory_store, durable, config, metrics)

        assert second.succeeded == 4
        assert await durable.count() == 4
        verification = await verify_backfill(memory_store, durable)
        assert verification["match"] is True
        assert verification["source"]["records_by_family"] == verification["target"]["records_by_family"]
    finally:
        durable.engine.dispose()


async def test_dry_run_writes_nothing(memory_store):
    await _seed(memory_store, 3)
    target = InMemoryStore()

    report = await backfill_records(memory_store, target, BackfillConfig(dry_run=True, pause_seconds=0))

    assert report.dry_run
    assert report.skipped == 3
    assert report.succeeded == 0
    assert await target.count() == 0


async def test_consent_family_filter(memory_store):
    await _seed(memory_store, 2, family="personal", prefix="p")
    await _seed(memory_store, 3, family="cohort", prefix="c")
    target = InMemoryStore()

    report = await backfill_records(
        memory_store, target, BackfillConfig(consent_family="cohort", pause_seconds=0)
    )

    assert report.total_source == 3
    assert sorted(record.id for record in target.iterate_all()) == ["c-0", "c-1", "c-2"]


async def test_failures_are_counted_not_raised(memory_store, metrics):
    await _seed(memory_store, 4)
    target = RejectingStore(reject_ids={"rec-1", "rec-3"})

    report = await backfill_records(memory_store, target, BackfillConfig(pause_seconds=0), metrics)

    assert not report.ok
    assert report.failed == 2
    assert sorted(report.failed_ids) == ["rec-1", "rec-3"]
    assert report.succeeded == 2
    assert metrics.counter("backfill_failures", reason="backend_unavailable") == 2

    verification = await verify_backfill(memory_store, target)
    assert verification["match"] is False


async def test_backfilled_records_are_recallable(memory_store):
    await _seed(memory_store, 2)
    target = InMemoryStore()
    await backfill_records(memory_store, target, BackfillConfig(pause_seconds=0))
    recalled = await target.recall(RecallQuery(hashed_pseudonym=PSEUDONYM_A))
    assert {record.id for record in recalled} == {"rec-0", "rec-1"}


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("BACKFILL_BATCH_SIZE", "25")
    monkeypatch.setenv("BACKFILL_DRY_RUN", "true")
    monkeypatch.setenv("BACKFILL_CONSENT_FAMILY", "population")
    config = load_backfill_config_from_env()
    assert config == BackfillConfig(batch_size=25, dry_run=True, consent_family="population")


def test_config_rejects_bad_values():
    with pytest.raises(ValidationIssue):
        BackfillConfig(batch_size=0)
    with pytest.raises(ValidationIssue):
        BackfillConfig(consent_family="everyone")

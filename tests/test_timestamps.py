from datetime import datetime, timedelta, timezone

import pytest

from conftest import PSEUDONYM_A, make_record
from memory_layer.records import QueryFilters, RecallQuery


@pytest.fixture(params=["memory", "durable"])
def any_store(request):
    return request.getfixturevalue(f"{request.param}_store")


def _naive_record(record_id, created, expires=None):
    record = make_record(record_id=record_id)
    record.created_at = created
    record.updated_at = created
    record.consent_timestamp = created
    record.expires_at = expires
    return record


def test_query_windows_are_normalized_to_utc():
    naive = datetime(2024, 5, 1, 12, 0)
    query = RecallQuery(hashed_pseudonym=PSEUDONYM_A, since=naive, until=naive)
    assert query.since == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert query.until.tzinfo is not None
    assert QueryFilters(since=naive).since.tzinfo is not None


async def test_naive_since_matches_aware_records(any_store):
    await any_store.store(make_record(record_id="aware"))
    since = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(hours=1)

    recalled = await any_store.recall(RecallQuery(hashed_pseudonym=PSEUDONYM_A, since=since))

    assert [record.id for record in recalled] == ["aware"]
    assert await any_store.count(QueryFilters(hashed_pseudonym=PSEUDONYM_A, since=since)) == 1


async def test_naive_record_timestamps_are_read_as_utc(any_store):
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    await any_store.store(_naive_record("naive-live", now))
    await any_store.store(_naive_record("naive-stale", now - timedelta(seconds=1), expires=now - timedelta(minutes=1)))
    await any_store.store(make_record(record_id="aware", created_offset_seconds=60))

    recalled = await any_store.recall(RecallQuery(hashed_pseudonym=PSEUDONYM_A))

    assert [record.id for record in recalled] == ["aware", "naive-live"]
    assert all(record.created_at.tzinfo is not None for record in recalled)
    assert await any_store.count() == 2
    assert await any_store.clear_expired() == 1

    fetched = await any_store.get("naive-live")
    assert fetched.created_at == now.replace(tzinfo=timezone.utc)

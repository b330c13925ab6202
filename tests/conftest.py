import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("PERSISTENCE", "memory")

from datetime import timedelta

import pytest

from memory_layer.config import DatabaseSettings, EncryptionSettings
from memory_layer.encryption import EncryptionService, MemoryKMSProvider
from memory_layer.metrics import StorageMetrics
from memory_layer.models import Base
from memory_layer.records import MemoryContent, MemoryRecord, utcnow
from memory_layer.storage.durable import DurableStore
from memory_layer.storage.in_memory import InMemoryStore

PSEUDONYM_A = "hs_" + "A" * 43
PSEUDONYM_B = "hs_" + "b_-" * 14 + "Z"
PSEUDONYM_HEX = "a1" * 32
TEST_KEK_ID = "kek-test"


def make_record(
    record_id: str = "rec-1",
    hashed_pseudonym: str = PSEUDONYM_A,
    session_id: str | None = "session-1",
    content_type: str = "text",
    data=None,
    metadata: dict | None = None,
    consent_family: str = "personal",
    created_offset_seconds: int = 0,
    expires_in_seconds: int | None = None,
) -> MemoryRecord:
    now = utcnow()
    created_at = now + timedelta(seconds=created_offset_seconds)
    return MemoryRecord(
        id=record_id,
        hashed_pseudonym=hashed_pseudonym,
        session_id=session_id,
        content=MemoryContent(type=content_type, data="hello" if data is None else data, metadata=metadata),
        consent_family=consent_family,
        consent_timestamp=created_at,
        consent_version="1.0",
        created_at=created_at,
        updated_at=created_at,
        expires_at=now + timedelta(seconds=expires_in_seconds) if expires_in_seconds is not None else None,
        access_count=0,
        audit_receipt_id=f"receipt-{record_id}",
    )


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def metrics():
    return StorageMetrics()


@pytest.fixture
def kms_provider():
    return MemoryKMSProvider(environment="test", initial_kek_id=TEST_KEK_ID)


@pytest.fixture
def encryption_service(kms_provider):
    return EncryptionService(kms_provider, kek_id=TEST_KEK_ID)


@pytest.fixture
def memory_store(metrics):
    return InMemoryStore(metrics=metrics)


@pytest.fixture
def db_settings(tmp_path):
    return DatabaseSettings(url=f"sqlite:///{tmp_path / 'memory.db'}", pool_size=5)


def build_durable_store(db_settings, metrics, encryption_service=None, encrypted=False, **kwargs) -> DurableStore:
    store = DurableStore(
        db_settings,
        encryption_settings=EncryptionSettings(enabled=encrypted, environment="test"),
        encryption_service=encryption_service,
        metrics=metrics,
        **kwargs,
    )
    Base.metadata.create_all(store.engine)
    return store


@pytest.fixture
def durable_store(db_settings, metrics):
    store = build_durable_store(db_settings, metrics)
    try:
        yield store
    finally:
        store.engine.dispose()


@pytest.fixture
def encrypted_durable_store(db_settings, metrics, encryption_service):
    store = build_durable_store(db_settings, metrics, encryption_service=encryption_service, encrypted=True)
    try:
        yield store
    finally:
        store.engine.dispose()

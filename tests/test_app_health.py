import time

import pytest
from fastapi.testclient import TestClient

from conftest import make_record
from app.main import create_app
from memory_layer.config import (
    DatabaseSettings,
    DualWriteSettings,
    EncryptionSettings,
    PersistenceMode,
    StorageSettings,
)
from memory_layer.errors import (
    ConfigurationError,
    ForgetCountMismatchError,
    StorageUnavailableError,
    ValidationIssue,
)
from memory_layer.storage.in_memory import InMemoryStore


class UnreachableStore(InMemoryStore):
    async def get_stats(self):
        raise StorageUnavailableError("database unreachable")


class SweepFailingStore(InMemoryStore):
    def __init__(self):
        super().__init__()
        self.sweeps = 0
        self.closed = False

    async def clear_expired(self):
        self.sweeps += 1
        raise RuntimeError("sweep failed")

    async def close(self):
        self.closed = True


def test_health_reports_service_and_mode():
    with TestClient(create_app(settings=StorageSettings())) as client:
        response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["service"] == "memory-layer"
    assert body["persistence"] == "memory"


def test_storage_health_includes_stats_and_metrics():
    store = InMemoryStore()
    app = create_app(settings=StorageSettings(), store=store)
    with TestClient(app) as client:
        client.portal.call(store.store, make_record(record_id="health-1"))
        response = client.get("/health/storage")
    assert response.status_code == 200
    body = response.json()
    assert body["store"] == "memory"
    assert body["stats"]["total_records"] == 1
    assert body["circuit_breakers"] == {}
    assert "counters" in body["metrics"]


def test_storage_health_returns_503_when_backend_is_down():
    app = create_app(settings=StorageSettings(), store=UnreachableStore())
    with TestClient(app) as client:
        response = client.get("/health/storage")
    assert response.status_code == 503
    assert response.json()["detail"]["error"] == "backend_unavailable"


def test_storage_health_for_dual_write(tmp_path):
    settings = StorageSettings(
        persistence=PersistenceMode.dual_write,
        database=DatabaseSettings(url=f"sqlite:///{tmp_path / 'app.db'}"),
        dual_write=DualWriteSettings(enabled=True, primary_store="memory"),
        auto_migrate_on_startup=True,
    )
    with TestClient(create_app(settings=settings)) as client:
        response = client.get("/health/storage")
    assert response.status_code == 200
    body = response.json()
    assert body["store"] == "dual-write"
    assert body["dual_write"]["primary_store"] == "memory"
    assert list(body["circuit_breakers"]) == ["durable_0"]
    assert body["circuit_breakers"]["durable_0"]["open"] is False


def test_readyz_without_encryption():
    with TestClient(create_app(settings=StorageSettings())) as client:
        response = client.get("/readyz")
    assert response.status_code == 200
    assert response.json()["kms"]["enabled"] is False


def test_readyz_after_kms_round_trip():
    settings = StorageSettings(encryption=EncryptionSettings(enabled=True, environment="test"))
    with TestClient(create_app(settings=settings)) as client:
        response = client.get("/readyz")
    assert response.status_code == 200
    kms = response.json()["kms"]
    assert kms["checked"] is True
    assert kms["ok"] is True
    assert kms["kek_id"].startswith("kek-")


def test_startup_refuses_memory_kms_in_production():
    settings = StorageSettings(encryption=EncryptionSettings(enabled=True, environment="production"))
    with pytest.raises(ConfigurationError):
        with TestClient(create_app(settings=settings)):
            pass


def test_storage_errors_map_to_json_responses():
    app = create_app(settings=StorageSettings())

    @app.get("/_raise/validation")
    async def raise_validation():
        raise ValidationIssue("bad pseudonym", field="hashed_pseudonym", error_type="invalid_format")

    @app.get("/_raise/unavailable")
    async def raise_unavailable():
        raise StorageUnavailableError("database unreachable")

    @app.get("/_raise/compliance")
    async def raise_compliance():
        raise ForgetCountMismatchError("forget count mismatch", primary_deleted=1, secondary_deleted=2)

    with TestClient(app) as client:
        validation = client.get("/_raise/validation")
        unavailable = client.get("/_raise/unavailable")
        compliance = client.get("/_raise/compliance")

    assert validation.status_code == 400
    assert validation.json() == {
        "error": "validation",
        "detail": "bad pseudonym",
        "field": "hashed_pseudonym",
        "error_type": "invalid_format",
    }
    assert unavailable.status_code == 503
    assert compliance.status_code == 500
    assert compliance.json()["error"] == "forget_count_mismatch"


def test_sweep_errors_do_not_stop_the_loop_or_skip_close(monkeypatch, caplog):
    store = SweepFailingStore()
    monkeypatch.setattr("app.main.build_memory_store", lambda *args, **kwargs: store)
    settings = StorageSettings(ttl_sweep_interval_seconds=1)

    with caplog.at_level("WARNING", logger="memory_layer"):
        with TestClient(create_app(settings=settings)):
            time.sleep(2.3)

    assert store.sweeps >= 2
    assert store.closed is True
    assert any(record.message == "ttl_sweep_failed" for record in caplog.records)


def test_backfill_endpoint_copies_into_durable_store(tmp_path, monkeypatch):
    monkeypatch.setenv("BACKFILL_PAUSE_SECONDS", "0")
    settings = StorageSettings(
        persistence=PersistenceMode.dual_write,
        database=DatabaseSettings(url=f"sqlite:///{tmp_path / 'ops.db'}"),
        dual_write=DualWriteSettings(enabled=True, primary_store="memory"),
        auto_migrate_on_startup=True,
    )
    app = create_app(settings=settings)
    with TestClient(app) as client:
        memory_member = app.state.store.primary
        client.portal.call(memory_member.store, make_record(record_id="ops-1"))
        client.portal.call(memory_member.store, make_record(record_id="ops-2"))

        dry = client.post("/ops/backfill", params={"dry_run": "true"})
        response = client.post("/ops/backfill")
        durable_count = client.portal.call(app.state.store.secondary.count)

    assert dry.status_code == 200
    assert dry.json()["report"]["skipped"] == 2
    assert response.status_code == 200
    body = response.json()
    assert body["report"]["succeeded"] == 2
    assert body["verification"]["match"] is True
    assert durable_count == 2


def test_backfill_endpoint_needs_dual_write():
    with TestClient(create_app(settings=StorageSettings())) as client:
        response = client.post("/ops/backfill")
    assert response.status_code == 409

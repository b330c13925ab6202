"""
FastAPI wiring for the memory layer.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import memory_layer.config as config
from memory_layer.config import StorageSettings, load_storage_settings_from_env, validate_settings
from memory_layer.encryption import EncryptionService, assert_kms_usable
from memory_layer.errors import (
    ComplianceConsistencyError,
    CryptoError,
    StorageUnavailableError,
    ValidationIssue,
    error_category,
    http_status_for,
)
from memory_layer.metrics import StorageMetrics
from memory_layer.storage import MemoryStore, build_memory_store, durable_stores
from app.routes.health import router as health_router
from app.routes.ops import router as ops_router


async def _ttl_sweep_loop(store: MemoryStore, interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await store.clear_expired()
        except Exception as exc:
            config.logger.warning("ttl_sweep_failed", extra={"category": error_category(exc)})


def _kms_status(settings: StorageSettings) -> dict:
    return {
        "enabled": settings.encryption.enabled,
        "provider": settings.encryption.kms_provider,
        "checked": False,
        "ok": not settings.encryption.enabled,
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate configuration, build the store, then tear it down on shutdown."""
    settings = app.state.settings or load_storage_settings_from_env()
    app.state.settings = settings
    validate_settings(settings)

    app.state.kms_status = _kms_status(settings)
    encryption_service = None
    if settings.encryption.enabled:
        encryption_service = EncryptionService.from_settings(settings.encryption)
        assert_kms_usable(encryption_service, settings.encryption)
        app.state.kms_status.update(
            checked=True,
            ok=True,
            kek_id=encryption_service.current_kek_id,
        )

    owns_store = app.state.store is None
    if owns_store:
        app.state.store = build_memory_store(settings, metrics=app.state.metrics, encryption_service=encryption_service)
        for durable in durable_stores(app.state.store):
            await durable.initialize(auto_migrate=settings.auto_migrate_on_startup)

    sweep_task = None
    if settings.ttl_sweep_interval_seconds > 0:
        sweep_task = asyncio.create_task(_ttl_sweep_loop(app.state.store, settings.ttl_sweep_interval_seconds))

    try:
        yield
    finally:
        try:
            if sweep_task:
                sweep_task.cancel()
                try:
                    await sweep_task
                except asyncio.CancelledError:
                    pass
        finally:
            if owns_store and app.state.store is not None:
                await app.state.store.close()
                app.state.store = None


async def _storage_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code = http_status_for(exc)
    if status_code >= 500:
        config.logger.error(
            "request_failed",
            extra={"path": request.url.path, "category": error_category(exc)},
        )
    content = {"error": error_category(exc), "detail": str(exc)}
    if isinstance(exc, ValidationIssue):
        content["field"] = exc.field
        content["error_type"] = exc.error_type
    return JSONResponse(status_code=status_code, content=content)


def create_app(
    settings: Optional[StorageSettings] = None,
    store: Optional[MemoryStore] = None,
    metrics: Optional[StorageMetrics] = None,
) -> FastAPI:
    app = FastAPI(title="Memory Layer", redirect_slashes=False, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.metrics = metrics or StorageMetrics()
    app.state.kms_status = None

    for exc_type in (ValidationIssue, StorageUnavailableError, ComplianceConsistencyError, CryptoError):
        app.add_exception_handler(exc_type, _storage_error_handler)

    app.include_router(health_router)
    app.include_router(ops_router)
    return app


app = create_app()

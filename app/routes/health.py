"""
Health and readiness endpoints.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from memory_layer.errors import StorageUnavailableError, error_category
from memory_layer.metrics import StorageMetrics
from memory_layer.storage import DualWriteStore, MemoryStore, durable_stores
from app.deps import get_memory_store, get_storage_metrics


router = APIRouter()


def _persistence_mode(request: Request) -> str | None:
    settings = getattr(request.app.state, "settings", None)
    return settings.persistence.value if settings is not None else None


@router.get("/health")
async def health(request: Request):
    """Liveness check."""
    return {
        "status": "healthy",
        "service": "memory-layer",
        "persistence": _persistence_mode(request),
    }


@router.get("/health/storage")
async def health_storage(
    store: MemoryStore = Depends(get_memory_store),
    metrics: StorageMetrics = Depends(get_storage_metrics),
):
    """Store stats, circuit breaker state and storage metrics."""
    breakers = {f"{durable.name}_{index}": durable.breaker_status() for index, durable in enumerate(durable_stores(store))}
    detail = {
        "store": store.name,
        "circuit_breakers": breakers,
        "metrics": metrics.snapshot(),
    }
    if isinstance(store, DualWriteStore):
        detail["dual_write"] = store.status()

    try:
        stats = await store.get_stats()
    except StorageUnavailableError as exc:
        detail["error"] = error_category(exc)
        raise HTTPException(status_code=503, detail=detail)

    return {"status": "healthy", "stats": stats.to_dict(), **detail}


@router.get("/readyz")
async def readyz(request: Request):
    """Ready once the store is built and, with encryption on, the KMS round trip passed."""
    kms_status = getattr(request.app.state, "kms_status", None)
    store = getattr(request.app.state, "store", None)
    if store is None or not kms_status or not kms_status.get("ok"):
        raise HTTPException(status_code=503, detail={"store_ready": store is not None, "kms": kms_status})
    return {"status": "ready", "store": store.name, "kms": kms_status}

"""
Dependency helpers for the FastAPI app.
"""

from __future__ import annotations

from fastapi import Request

from memory_layer.metrics import StorageMetrics
from memory_layer.storage import MemoryStore


def get_memory_store(request: Request) -> MemoryStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise RuntimeError("Memory store not initialized - app lifespan has not run")
    return store


def get_storage_metrics(request: Request) -> StorageMetrics:
    return request.app.state.metrics

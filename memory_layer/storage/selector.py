"""
Resolve the configured persistence mode into one concrete store.
"""

from __future__ import annotations

from typing import Optional

import memory_layer.config as config
from memory_layer.config import PersistenceMode, StorageSettings
from memory_layer.encryption import EncryptionService
from memory_layer.errors import ConfigurationError
from memory_layer.metrics import StorageMetrics
from memory_layer.storage.dual_write import DualWriteStore
from memory_layer.storage.durable import DurableStore
from memory_layer.storage.in_memory import InMemoryStore
from memory_layer.storage.interface import MemoryStore

logger = config.logger


def _build_durable_store(
    settings: StorageSettings,
    metrics: StorageMetrics,
    encryption_service: Optional[EncryptionService],
) -> DurableStore:
    if settings.database is None:
        raise ConfigurationError("Durable persistence requires database settings")
    return DurableStore(
        settings.database,
        encryption_settings=settings.encryption,
        encryption_service=encryption_service,
        breaker_settings=settings.circuit_breaker,
        metrics=metrics,
    )


def build_memory_store(
    settings: StorageSettings,
    metrics: Optional[StorageMetrics] = None,
    encryption_service: Optional[EncryptionService] = None,
) -> MemoryStore:
    metrics = metrics or StorageMetrics()
    mode = settings.persistence

    if mode == PersistenceMode.memory:
        store: MemoryStore = InMemoryStore(metrics=metrics)
    elif mode == PersistenceMode.durable:
        store = _build_durable_store(settings, metrics, encryption_service)
    elif mode == PersistenceMode.dual_write:
        if settings.dual_write.enabled:
            store = DualWriteStore(
                InMemoryStore(metrics=metrics),
                _build_durable_store(settings, metrics, encryption_service),
                settings=settings.dual_write,
                metrics=metrics,
            )
        elif settings.dual_write.primary_store in {"durable", "postgres"}:
            store = _build_durable_store(settings, metrics, encryption_service)
        else:
            store = InMemoryStore(metrics=metrics)
    else:
        raise ConfigurationError(f"Unsupported persistence mode: {mode}")

    logger.info("memory_store_selected", extra={"persistence": mode.value, "store": store.name})
    return store


def durable_stores(store: MemoryStore) -> list[DurableStore]:
    """Durable stores reachable from ``store``, including both sides of a dual-write adapter."""
    if isinstance(store, DurableStore):
        return [store]
    if isinstance(store, DualWriteStore):
        return [side for side in (store.primary, store.secondary) if isinstance(side, DurableStore)]
    return []

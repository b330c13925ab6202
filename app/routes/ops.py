"""
Operator endpoints for the dual-write migration.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from memory_layer.errors import ConfigurationError
from memory_layer.storage import DualWriteStore, MemoryStore
from memory_layer.storage.backfill import load_backfill_config_from_env
from app.deps import get_memory_store


router = APIRouter(prefix="/ops")


@router.post("/backfill")
async def backfill(
    dry_run: Optional[bool] = None,
    store: MemoryStore = Depends(get_memory_store),
):
    """Copy in-process records into the durable store; BACKFILL_* env vars configure the run."""
    if not isinstance(store, DualWriteStore):
        raise HTTPException(status_code=409, detail="backfill requires PERSISTENCE=dual-write")

    backfill_config = load_backfill_config_from_env()
    if dry_run is not None:
        backfill_config = replace(backfill_config, dry_run=dry_run)

    try:
        report, verification = await store.backfill(backfill_config)
    except ConfigurationError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"report": report.to_dict(), "verification": verification}

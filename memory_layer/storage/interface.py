"""
Storage contract shared by every memory backend.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from memory_layer.records import ForgetRequest, MemoryRecord, QueryFilters, RecallQuery, StorageStats


class MemoryStore(ABC):
    """
    Async storage interface for memory records.

    Implementations must keep ids unique, hide expired records from
    ``recall``/``count``, and validate records before any I/O.
    """

    name = "abstract"

    @abstractmethod
    async def store(self, record: MemoryRecord) -> MemoryRecord:
        """Insert or update a record by id and return the stored version."""

    @abstractmethod
    async def recall(self, query: RecallQuery) -> list[MemoryRecord]:
        """Non-expired records for one subject, sorted by created_at and paginated."""

    @abstractmethod
    async def forget(self, request: ForgetRequest) -> list[str]:
        """Delete matching records and return their ids."""

    @abstractmethod
    async def count(self, filters: Optional[QueryFilters] = None) -> int:
        ...

    @abstractmethod
    async def get(self, record_id: str) -> Optional[MemoryRecord]:
        ...

    @abstractmethod
    async def increment_access_count(self, record_id: str) -> Optional[MemoryRecord]:
        ...

    @abstractmethod
    async def exists(self, record_id: str) -> bool:
        ...

    @abstractmethod
    async def clear_expired(self) -> int:
        """Delete records whose expires_at has passed; return how many."""

    @abstractmethod
    async def get_stats(self) -> StorageStats:
        ...

    @abstractmethod
    async def clear(self) -> None:
        """Remove every record. Tests and local resets only."""

    async def close(self) -> None:
        return None

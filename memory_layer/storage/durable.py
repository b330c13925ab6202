"""
Durable memory store on a pooled SQLAlchemy engine.

Blocking database work runs in worker threads via ``asyncio.to_thread``; every
connection is scoped with ``engine.begin()``/``engine.connect()`` so it goes
back to the pool on every exit path.

Beyond CRUD this store owns:
- envelope encryption of ``content.data`` when encryption is enabled
- a circuit breaker fed by the engine's ``handle_error`` event
- hard ceilings on recall pagination
- bounded-concurrency decryption of recall results
"""

from __future__ import annotations

import asyncio
import json
import threading
from typing import Any, Callable, Optional

from sqlalchemy import delete, event, func, or_, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

import memory_layer.config as config
from memory_layer.config import CircuitBreakerSettings, DatabaseSettings, EncryptionSettings
from memory_layer.db import create_storage_engine, init_schema
from memory_layer.encryption import EncryptedEnvelope, EncryptionService
from memory_layer.errors import (
    CircuitBreakerOpenError,
    CryptoError,
    DecryptionError,
    StorageUnavailableError,
    error_category,
)
from memory_layer.metrics import StorageMetrics
from memory_layer.models import memory_records
from memory_layer.records import (
    ForgetRequest,
    MemoryContent,
    MemoryRecord,
    QueryFilters,
    RecallQuery,
    StorageStats,
    as_utc,
    utcnow,
)
from memory_layer.storage.circuit_breaker import CLOSED, OPEN, StoreCircuitBreaker
from memory_layer.storage.in_memory import effective_limit
from memory_layer.storage.interface import MemoryStore
from memory_layer.validators import validate_record

logger = config.logger

# Replaced on upsert; everything else keeps its first-write value.
MUTABLE_COLUMNS = (
    "session_id",
    "content",
    "updated_at",
    "expires_at",
    "access_count",
    "audit_receipt_id",
    "encryption_version",
)

_INFRASTRUCTURE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError)


def clamp_pagination(limit: int, offset: int) -> tuple[int, int]:
    safe_limit = min(effective_limit(limit), config.MAX_QUERY_LIMIT)
    safe_offset = min(offset, config.MAX_QUERY_OFFSET)
    if safe_offset > config.LARGE_OFFSET_WARNING:
        logger.warning(
            "large_pagination_offset",
            extra={"offset": safe_offset, "hint": "use created_at ranges (since/until) instead of deep offsets"},
        )
    return safe_limit, safe_offset


def _not_expired(now):
    return or_(memory_records.c.expires_at.is_(None), memory_records.c.expires_at > now)


def _optional_utc(value):
    return as_utc(value) if value is not None else None


class DurableStore(MemoryStore):
    name = "durable"

    def __init__(
        self,
        db_settings: DatabaseSettings,
        encryption_settings: Optional[EncryptionSettings] = None,
        encryption_service: Optional[EncryptionService] = None,
        breaker_settings: Optional[CircuitBreakerSettings] = None,
        metrics: Optional[StorageMetrics] = None,
        breaker: Optional[StoreCircuitBreaker] = None,
    ):
        self._db_settings = db_settings
        self._encryption_settings = encryption_settings or EncryptionSettings()
        self._encryption_enabled = self._encryption_settings.enabled
        if self._encryption_enabled and encryption_service is None:
            encryption_service = EncryptionService.from_settings(self._encryption_settings)
        # kept even when disabled so rows written while encryption was on stay readable
        self._encryption_service = encryption_service
        self._metrics = metrics or StorageMetrics()
        breaker_settings = breaker_settings or CircuitBreakerSettings()
        self._breaker = breaker or StoreCircuitBreaker(
            failure_threshold=breaker_settings.failure_threshold,
            cooldown_seconds=breaker_settings.cooldown_seconds,
        )
        self._engine_lock = threading.Lock()
        self._engine = self._build_engine()
        logger.info(
            "durable_store_initialized",
            extra={
                "backend": db_settings.backend,
                "pool_size": db_settings.pool_size,
                "encryption_enabled": self._encryption_enabled,
            },
        )

    # ------------------------------------------------------------------
    # engine lifecycle and circuit breaker
    # ------------------------------------------------------------------

    @property
    def engine(self) -> Engine:
        with self._engine_lock:
            return self._engine

    @property
    def encryption_enabled(self) -> bool:
        return self._encryption_enabled

    def breaker_status(self) -> dict:
        return self._breaker.status()

    def _build_engine(self) -> Engine:
        engine = create_storage_engine(self._db_settings)
        event.listen(engine, "handle_error", self._on_handle_error)
        event.listen(engine, "connect", self._on_connect)
        return engine

    def _on_connect(self, dbapi_connection, connection_record) -> None:
        self._breaker.record_success()

    def _on_handle_error(self, context) -> None:
        if getattr(context, "is_pre_ping", False):
            return
        if not (context.is_disconnect or isinstance(context.sqlalchemy_exception, (OperationalError, InterfaceError))):
            return
        self._record_failure(type(context.original_exception).__name__)

    def _record_failure(self, error: str) -> None:
        self._metrics.increment("db_pool_errors", error=error)
        if self._breaker.record_failure(error):
            logger.error("db_circuit_breaker_tripped", extra={"error": error, **self._breaker.status()})
            self._dispose_engine()

    def _dispose_engine(self) -> None:
        with self._engine_lock:
            engine = self._engine
        engine.dispose()

    def _reinitialize_engine(self) -> None:
        with self._engine_lock:
            old_engine = self._engine
            self._engine = self._build_engine()
        old_engine.dispose()

    def _check_circuit_breaker(self) -> None:
        state = self._breaker.check()
        if state == CLOSED:
            return
        if state == OPEN:
            self._metrics.increment("db_circuit_breaker_rejections")
            raise CircuitBreakerOpenError("durable store circuit breaker is open")
        try:
            self._reinitialize_engine()
        except SQLAlchemyError as exc:
            self._breaker.complete_reset(False)
            raise StorageUnavailableError("durable store could not be reinitialized") from exc
        self._breaker.complete_reset(True)
        logger.info("db_circuit_breaker_reset")

    async def _run(self, operation: str, fn: Callable[..., Any], *args) -> Any:
        self._check_circuit_breaker()
        try:
            result = await asyncio.to_thread(fn, *args)
        except PoolTimeoutError as exc:
            # pool exhaustion never reaches handle_error
            self._record_failure(type(exc).__name__)
            raise StorageUnavailableError(f"durable store pool exhausted during {operation}") from exc
        except _INFRASTRUCTURE_ERRORS as exc:
            raise StorageUnavailableError(f"durable store unavailable during {operation}") from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                raise StorageUnavailableError(f"durable store connection lost during {operation}") from exc
            raise
        self._breaker.record_success()
        return result

    async def initialize(self, auto_migrate: bool = False) -> None:
        """Verify (or migrate) the schema before serving traffic."""
        self._check_circuit_breaker()
        await asyncio.to_thread(init_schema, self.engine, self._db_settings.url, auto_migrate)

    # ------------------------------------------------------------------
    # content encoding
    # ------------------------------------------------------------------

    def _encode_content(self, record: MemoryRecord) -> tuple[dict, Optional[str]]:
        if not self._encryption_enabled:
            return record.content.to_dict(), None
        plaintext = json.dumps(record.content.data).encode("utf-8")
        try:
            envelope = self._encryption_service.encrypt(plaintext)
        except CryptoError as exc:
            self._metrics.increment("crypto_encrypt_failures", category=error_category(exc))
            logger.error("record_encryption_failed", extra={"record_id": record.id, "category": error_category(exc)})
            raise
        self._metrics.increment("crypto_ops", op="encrypt")
        blob = {"type": record.content.type}
        if record.content.metadata is not None:
            blob["metadata"] = record.content.metadata
        blob.update(envelope.to_dict())
        return blob, envelope.encryption_version

    def _decode_content(self, record_id: str, blob: dict, encryption_version: Optional[str]) -> MemoryContent:
        if not isinstance(blob, dict):
            raise DecryptionError(f"record {record_id} has a malformed content blob")
        # either signal marks the row as encrypted
        if encryption_version is None and "data_ciphertext" not in blob:
            return MemoryContent.from_dict(blob)

        try:
            if self._encryption_service is None:
                raise DecryptionError("record is encrypted but no encryption service is configured")
            fields = dict(blob)
            if not fields.get("encryption_version"):
                fields["encryption_version"] = encryption_version
            envelope = EncryptedEnvelope.from_dict(fields)
            plaintext = self._encryption_service.decrypt(envelope)
            data = json.loads(plaintext.decode("utf-8"))
        except CryptoError as exc:
            self._decrypt_failed(record_id, exc)
            raise
        except ValueError as exc:
            self._decrypt_failed(record_id, exc)
            raise DecryptionError(f"record {record_id} decrypted to invalid JSON") from exc
        self._metrics.increment("crypto_ops", op="decrypt")
        return MemoryContent(type=blob.get("type"), data=data, metadata=blob.get("metadata"))

    def _decrypt_failed(self, record_id: str, exc: Exception) -> None:
        self._metrics.increment("crypto_decrypt_failures", category=error_category(exc))
        logger.error("record_decryption_failed", extra={"record_id": record_id, "category": error_category(exc)})

    def _record_from_row(self, row: dict, content: Optional[MemoryContent] = None) -> MemoryRecord:
        if content is None:
            content = self._decode_content(row["id"], row["content"], row["encryption_version"])
        return MemoryRecord(
            id=row["id"],
            hashed_pseudonym=row["hashed_pseudonym"],
            session_id=row["session_id"],
            content=content,
            consent_family=row["consent_family"],
            consent_timestamp=_optional_utc(row["consent_timestamp"]),
            consent_version=row["consent_version"],
            created_at=_optional_utc(row["created_at"]),
            updated_at=_optional_utc(row["updated_at"]),
            expires_at=_optional_utc(row["expires_at"]),
            access_count=row["access_count"] or 0,
            audit_receipt_id=row["audit_receipt_id"],
            encryption_version=row["encryption_version"],
        )

    async def _records_from_rows(self, rows: list[dict]) -> list[MemoryRecord]:
        batch_size = config.BATCH_DECRYPT_CONCURRENCY
        records: list[MemoryRecord] = []
        for start in range(0, len(rows), batch_size):
            batch = rows[start:start + batch_size]
            records.extend(
                await asyncio.gather(*(asyncio.to_thread(self._record_from_row, row) for row in batch))
            )
        return records

    # ------------------------------------------------------------------
    # synchronous database work
    # ------------------------------------------------------------------

    @staticmethod
    def _fetch_row(conn: Connection, record_id: str) -> Optional[dict]:
        row = conn.execute(select(memory_records).where(memory_records.c.id == record_id)).first()
        return dict(row._mapping) if row is not None else None

    @staticmethod
    def _upsert(conn: Connection, values: dict) -> None:
        dialect = conn.dialect.name
        if dialect in {"postgresql", "sqlite"}:
            insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert_fn(memory_records).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[memory_records.c.id],
                set_={name: stmt.excluded[name] for name in MUTABLE_COLUMNS},
            )
            conn.execute(stmt)
            return
        existing = conn.execute(select(memory_records.c.id).where(memory_records.c.id == values["id"])).first()
        if existing is None:
            conn.execute(memory_records.insert().values(**values))
        else:
            conn.execute(
                update(memory_records)
                .where(memory_records.c.id == values["id"])
                .values(**{name: values[name] for name in MUTABLE_COLUMNS})
            )

    def _store_sync(self, record: MemoryRecord) -> dict:
        blob, encryption_version = self._encode_content(record)
        values = {
            "id": record.id,
            "hashed_pseudonym": record.hashed_pseudonym,
            "session_id": record.session_id,
            "content": blob,
            "consent_family": record.consent_family,
            "consent_timestamp": as_utc(record.consent_timestamp),
            "consent_version": record.consent_version,
            "created_at": as_utc(record.created_at),
            "updated_at": as_utc(record.updated_at),
            "expires_at": _optional_utc(record.expires_at),
            "access_count": record.access_count,
            "audit_receipt_id": record.audit_receipt_id,
            "encryption_version": encryption_version,
        }
        with self.engine.begin() as conn:
            self._upsert(conn, values)
            return self._fetch_row(conn, record.id)

    @staticmethod
    def _recall_statement(query: RecallQuery, now, limit: int, offset: int):
        table = memory_records
        conditions = [table.c.hashed_pseudonym == query.hashed_pseudonym, _not_expired(now)]
        if query.session_id:
            conditions.append(table.c.session_id == query.session_id)
        if query.since is not None:
            conditions.append(table.c.created_at >= as_utc(query.since))
        if query.until is not None:
            conditions.append(table.c.created_at <= as_utc(query.until))
        if query.type:
            conditions.append(table.c.content["type"].as_string() == query.type)
        if query.sort == "asc":
            ordering = (table.c.created_at.asc(), table.c.id.asc())
        else:
            ordering = (table.c.created_at.desc(), table.c.id.desc())
        return select(table).where(*conditions).order_by(*ordering).limit(limit).offset(offset)

    def _recall_sync(self, query: RecallQuery, now, limit: int, offset: int) -> list[dict]:
        with self.engine.connect() as conn:
            rows = conn.execute(self._recall_statement(query, now, limit, offset)).all()
        return [dict(row._mapping) for row in rows]

    def _bump_access_counts_sync(self, record_ids: list[str]) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(memory_records)
                .where(memory_records.c.id.in_(record_ids))
                .values(access_count=memory_records.c.access_count + 1)
            )

    def _forget_sync(self, column: str, value: str) -> list[str]:
        condition = memory_records.c[column] == value
        with self.engine.begin() as conn:
            if conn.dialect.delete_returning:
                result = conn.execute(delete(memory_records).where(condition).returning(memory_records.c.id))
                return [row[0] for row in result]
            ids = [row[0] for row in conn.execute(select(memory_records.c.id).where(condition))]
            if ids:
                conn.execute(delete(memory_records).where(memory_records.c.id.in_(ids)))
            return ids

    def _count_sync(self, filters: QueryFilters, now) -> int:
        table = memory_records
        conditions = [_not_expired(now)]
        if filters.hashed_pseudonym:
            conditions.append(table.c.hashed_pseudonym == filters.hashed_pseudonym)
        if filters.session_id:
            conditions.append(table.c.session_id == filters.session_id)
        if filters.consent_family:
            conditions.append(table.c.consent_family == filters.consent_family)
        if filters.since is not None:
            conditions.append(table.c.created_at >= as_utc(filters.since))
        if filters.until is not None:
            conditions.append(table.c.created_at <= as_utc(filters.until))
        if filters.type:
            conditions.append(table.c.content["type"].as_string() == filters.type)
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(table).where(*conditions)).scalar_one()

    def _get_sync(self, record_id: str) -> Optional[dict]:
        with self.engine.connect() as conn:
            return self._fetch_row(conn, record_id)

    def _increment_sync(self, record_id: str) -> Optional[dict]:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(memory_records)
                .where(memory_records.c.id == record_id)
                .values(access_count=memory_records.c.access_count + 1)
            )
            if result.rowcount == 0:
                return None
            return self._fetch_row(conn, record_id)

    def _exists_sync(self, record_id: str) -> bool:
        with self.engine.connect() as conn:
            return conn.execute(select(memory_records.c.id).where(memory_records.c.id == record_id)).first() is not None

    def _clear_expired_sync(self, now) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(memory_records).where(
                    memory_records.c.expires_at.is_not(None),
                    memory_records.c.expires_at <= now,
                )
            )
            return result.rowcount or 0

    @staticmethod
    def _storage_bytes(conn: Connection) -> int:
        dialect = conn.dialect.name
        if dialect == "postgresql":
            return int(conn.execute(text("SELECT pg_total_relation_size('memory_records')")).scalar() or 0)
        if dialect == "sqlite":
            page_count = conn.exec_driver_sql("PRAGMA page_count").scalar() or 0
            page_size = conn.exec_driver_sql("PRAGMA page_size").scalar() or 0
            return int(page_count) * int(page_size)
        return 0

    def _stats_sync(self) -> StorageStats:
        table = memory_records
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(table)).scalar_one()
            by_family = conn.execute(
                select(table.c.consent_family, func.count()).group_by(table.c.consent_family)
            ).all()
            storage_bytes = self._storage_bytes(conn)
        return StorageStats(
            total_records=total,
            records_by_family={family: count for family, count in by_family},
            storage_bytes=storage_bytes,
        )

    def _clear_sync(self) -> None:
        with self.engine.begin() as conn:
            if conn.dialect.name == "postgresql":
                conn.execute(text("TRUNCATE TABLE memory_records"))
            else:
                conn.execute(delete(memory_records))

    # ------------------------------------------------------------------
    # MemoryStore
    # ------------------------------------------------------------------

    async def store(self, record: MemoryRecord) -> MemoryRecord:
        validate_record(record)
        row = await self._run("store", self._store_sync, record)
        return self._record_from_row(row, content=record.copy().content)

    async def recall(self, query: RecallQuery) -> list[MemoryRecord]:
        limit, offset = clamp_pagination(query.limit, query.offset)
        rows = await self._run("recall", self._recall_sync, query, utcnow(), limit, offset)
        records = await self._records_from_rows(rows)
        if records and await self._bump_access_counts([record.id for record in records]):
            for record in records:
                record.access_count += 1
        return records

    async def _bump_access_counts(self, record_ids: list[str]) -> bool:
        """Best-effort read bump; a failure is logged and counted, never raised."""
        try:
            await self._run("increment_access_count", self._bump_access_counts_sync, record_ids)
        except (StorageUnavailableError, SQLAlchemyError) as exc:
            self._metrics.increment("access_count_increment_failures", store=self.name)
            logger.warning(
                "access_count_increment_failed",
                extra={"record_count": len(record_ids), "category": error_category(exc)},
            )
            return False
        return True

    async def forget(self, request: ForgetRequest) -> list[str]:
        column, value = request.selector()
        deleted = await self._run("forget", self._forget_sync, column, value)
        logger.info(
            "memory_records_forgotten",
            extra={"store": self.name, "selector": column, "deleted_count": len(deleted), "reason": request.reason},
        )
        return deleted

    async def count(self, filters: Optional[QueryFilters] = None) -> int:
        return await self._run("count", self._count_sync, filters or QueryFilters(), utcnow())

    async def get(self, record_id: str) -> Optional[MemoryRecord]:
        row = await self._run("get", self._get_sync, record_id)
        if row is None:
            return None
        return await asyncio.to_thread(self._record_from_row, row)

    async def increment_access_count(self, record_id: str) -> Optional[MemoryRecord]:
        row = await self._run("increment_access_count", self._increment_sync, record_id)
        if row is None:
            return None
        return await asyncio.to_thread(self._record_from_row, row)

    async def exists(self, record_id: str) -> bool:
        return await self._run("exists", self._exists_sync, record_id)

    async def clear_expired(self) -> int:
        deleted = await self._run("clear_expired", self._clear_expired_sync, utcnow())
        if deleted:
            logger.info("expired_records_cleared", extra={"store": self.name, "deleted_count": deleted})
        return deleted

    async def get_stats(self) -> StorageStats:
        return await self._run("get_stats", self._stats_sync)

    async def clear(self) -> None:
        await self._run("clear", self._clear_sync)

    async def close(self) -> None:
        await asyncio.to_thread(self.engine.dispose)
        logger.info("durable_store_closed")

"""
Shared configuration for the memory layer.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from urllib.parse import quote_plus

from memory_layer.errors import ConfigurationError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("memory_layer")


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_str(env_name: str, default: str) -> str:
    return os.environ.get(env_name, default).strip()


class PersistenceMode(str, Enum):
    memory = "memory"
    durable = "durable"
    dual_write = "dual-write"

    @classmethod
    def parse(cls, value: str) -> "PersistenceMode":
        normalized = (value or "").strip().lower()
        if normalized == "postgres":
            return cls.durable
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ConfigurationError(
                f"PERSISTENCE must be one of memory|durable|dual-write, got '{value}'"
            ) from exc


class KMSProviderName(str, Enum):
    memory = "memory"
    aws = "aws"
    gcp = "gcp"


PRODUCTION_ENVIRONMENTS = {"production", "prod"}

# Durable store query guards
MAX_QUERY_LIMIT = 10_000
MAX_QUERY_OFFSET = 100_000
LARGE_OFFSET_WARNING = 10_000
BATCH_DECRYPT_CONCURRENCY = 10
DEFAULT_RECALL_LIMIT = 100


@dataclass(frozen=True)
class DatabaseSettings:
    url: str
    pool_size: int = 20
    pool_timeout_seconds: float = 2.0
    pool_recycle_seconds: int = 30
    echo: bool = False

    @property
    def backend(self) -> str:
        url_lower = self.url.lower()
        if url_lower.startswith("sqlite"):
            return "sqlite"
        if url_lower.startswith("postgres"):
            return "postgres"
        return "other"


@dataclass(frozen=True)
class CircuitBreakerSettings:
    failure_threshold: int = 5
    cooldown_seconds: float = 10.0


@dataclass(frozen=True)
class EncryptionSettings:
    enabled: bool = False
    kms_provider: str = KMSProviderName.memory.value
    kek_id: Optional[str] = None
    dev_kek_base64: Optional[str] = None
    environment: str = "development"

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in PRODUCTION_ENVIRONMENTS


@dataclass(frozen=True)
class DualWriteSettings:
    enabled: bool = False
    primary_store: str = "memory"
    fail_fast: bool = False
    fallback_on_empty: bool = True
    secondary_timeout_seconds: float = 5.0


@dataclass(frozen=True)
class StorageSettings:
    persistence: PersistenceMode = PersistenceMode.memory
    database: Optional[DatabaseSettings] = None
    encryption: EncryptionSettings = field(default_factory=EncryptionSettings)
    circuit_breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    dual_write: DualWriteSettings = field(default_factory=DualWriteSettings)
    auto_migrate_on_startup: bool = False
    ttl_sweep_interval_seconds: int = 0


def _database_url_from_env() -> str:
    url = os.environ.get("DATABASE_URL")
    if url:
        return url
    host = _get_str("PGHOST", "localhost")
    port = _get_int("PGPORT", 5432)
    database = _get_str("PGDATABASE", "lichen_memory")
    user = _get_str("PGUSER", "postgres")
    password = os.environ.get("PGPASSWORD", "")
    auth = quote_plus(user)
    if password:
        auth = f"{auth}:{quote_plus(password)}"
    url = f"postgresql+psycopg2://{auth}@{host}:{port}/{database}"
    if _get_bool("PGSSL", False):
        url += "?sslmode=require"
    return url


def load_database_settings_from_env() -> DatabaseSettings:
    return DatabaseSettings(
        url=_database_url_from_env(),
        pool_size=_get_int("DB_POOL_SIZE", 20),
        pool_timeout_seconds=_get_float("DB_POOL_TIMEOUT_SECONDS", 2.0),
        pool_recycle_seconds=_get_int("DB_POOL_RECYCLE_SECONDS", 30),
        echo=_get_bool("DB_ECHO", False),
    )


def load_encryption_settings_from_env() -> EncryptionSettings:
    environment = os.environ.get("ENVIRONMENT") or os.environ.get("APP_ENV") or "development"
    return EncryptionSettings(
        enabled=_get_bool("ENCRYPTION_ENABLED", False),
        kms_provider=_get_str("KMS_PROVIDER", KMSProviderName.memory.value).lower(),
        kek_id=os.environ.get("KEK_ID") or None,
        dev_kek_base64=os.environ.get("DEV_KEK_BASE64") or None,
        environment=environment.strip().lower(),
    )


def load_circuit_breaker_settings_from_env() -> CircuitBreakerSettings:
    return CircuitBreakerSettings(
        failure_threshold=_get_int("DB_BREAKER_THRESHOLD", 5),
        cooldown_seconds=_get_float("DB_BREAKER_COOLDOWN_SECONDS", 10.0),
    )


def load_dual_write_settings_from_env() -> DualWriteSettings:
    return DualWriteSettings(
        enabled=_get_bool("DUAL_WRITE_ENABLED", False),
        primary_store=_get_str("DUAL_WRITE_PRIMARY", "memory").lower(),
        fail_fast=_get_bool("DUAL_WRITE_FAIL_FAST", False),
        fallback_on_empty=_get_bool("DUAL_WRITE_FALLBACK_ON_EMPTY", True),
        secondary_timeout_seconds=_get_float("DUAL_WRITE_SECONDARY_TIMEOUT_SECONDS", 5.0),
    )


def load_storage_settings_from_env() -> StorageSettings:
    persistence = PersistenceMode.parse(os.environ.get("PERSISTENCE", "memory"))
    database = None
    if persistence != PersistenceMode.memory:
        database = load_database_settings_from_env()
    dual_write = load_dual_write_settings_from_env()
    # Selecting dual-write mode implies the adapter is active unless explicitly disabled.
    if persistence == PersistenceMode.dual_write and os.environ.get("DUAL_WRITE_ENABLED") is None:
        dual_write = DualWriteSettings(
            enabled=True,
            primary_store=dual_write.primary_store,
            fail_fast=dual_write.fail_fast,
            fallback_on_empty=dual_write.fallback_on_empty,
            secondary_timeout_seconds=dual_write.secondary_timeout_seconds,
        )
    return StorageSettings(
        persistence=persistence,
        database=database,
        encryption=load_encryption_settings_from_env(),
        circuit_breaker=load_circuit_breaker_settings_from_env(),
        dual_write=dual_write,
        auto_migrate_on_startup=_get_bool("AUTO_MIGRATE_ON_STARTUP", False),
        ttl_sweep_interval_seconds=_get_int("TTL_SWEEP_INTERVAL_SECONDS", 0),
    )


def validate_settings(settings: StorageSettings) -> None:
    """Validate storage configuration at startup."""
    errors = []

    if settings.persistence != PersistenceMode.memory:
        if settings.database is None or not settings.database.url:
            errors.append("DATABASE_URL (or PG* variables) required for durable persistence")
        elif settings.database.pool_size <= 0:
            errors.append("DB_POOL_SIZE must be positive")

    if settings.dual_write.primary_store not in {"memory", "durable", "postgres"}:
        errors.append("DUAL_WRITE_PRIMARY must be 'memory' or 'durable'")
    if settings.dual_write.secondary_timeout_seconds <= 0:
        errors.append("DUAL_WRITE_SECONDARY_TIMEOUT_SECONDS must be positive")

    if settings.circuit_breaker.failure_threshold <= 0:
        errors.append("DB_BREAKER_THRESHOLD must be positive")
    if settings.circuit_breaker.cooldown_seconds <= 0:
        errors.append("DB_BREAKER_COOLDOWN_SECONDS must be positive")

    provider_names = {provider.value for provider in KMSProviderName}
    if settings.encryption.kms_provider not in provider_names:
        errors.append("KMS_PROVIDER must be 'memory', 'aws', or 'gcp'")

    if errors:
        raise ConfigurationError("Configuration invalid: " + "; ".join(errors))

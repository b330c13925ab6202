"""
Database engine construction and migration helpers.
"""

from __future__ import annotations

import os
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool

import memory_layer.config as config
from memory_layer.config import DatabaseSettings
from memory_layer.errors import ConfigurationError


def _is_sqlite_memory_url(url: str) -> bool:
    url_lower = url.lower()
    return url_lower in {"sqlite://", "sqlite:///:memory:"} or "mode=memory" in url_lower


def create_storage_engine(settings: DatabaseSettings) -> Engine:
    """Build a pooled engine; acquisition waits at most ``pool_timeout_seconds``."""
    engine_kwargs = {"pool_pre_ping": True, "echo": settings.echo}
    if settings.backend == "sqlite":
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if _is_sqlite_memory_url(settings.url):
            engine_kwargs["poolclass"] = StaticPool
            return create_engine(settings.url, **engine_kwargs)
    engine_kwargs["poolclass"] = QueuePool
    engine_kwargs["pool_size"] = settings.pool_size
    engine_kwargs["pool_timeout"] = settings.pool_timeout_seconds
    engine_kwargs["pool_recycle"] = settings.pool_recycle_seconds
    return create_engine(settings.url, **engine_kwargs)


def _get_alembic_config(database_url: str):
    try:
        from alembic.config import Config
    except ImportError as exc:
        raise ConfigurationError("Alembic is required for migrations") from exc

    base_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    alembic_cfg = Config(os.path.join(base_dir, "alembic.ini"))
    alembic_cfg.set_main_option("script_location", os.path.join(base_dir, "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))
    return alembic_cfg


def get_schema_revisions(engine: Engine, database_url: str) -> tuple[Optional[str], Optional[str]]:
    from alembic.runtime.migration import MigrationContext
    from alembic.script import ScriptDirectory

    alembic_cfg = _get_alembic_config(database_url)
    script = ScriptDirectory.from_config(alembic_cfg)
    head_revision = script.get_current_head()
    with engine.connect() as conn:
        context = MigrationContext.configure(conn)
        current_revision = context.get_current_revision()
    return current_revision, head_revision


def init_schema(engine: Engine, database_url: str, auto_migrate: bool) -> None:
    """Ensure the memory_records table is at the expected alembic revision."""
    from alembic import command

    current_rev, head_rev = get_schema_revisions(engine, database_url)
    if current_rev == head_rev:
        return

    if auto_migrate:
        config.logger.info("Migrating memory layer schema...")
        command.upgrade(_get_alembic_config(database_url), "head")
        new_current, _ = get_schema_revisions(engine, database_url)
        if new_current != head_rev:
            raise ConfigurationError("Database migration did not reach expected revision")
        config.logger.info("Memory layer schema up to date")
    else:
        raise ConfigurationError(
            f"Database schema out of date (current={current_rev}, expected={head_rev}). "
            "Run 'alembic upgrade head' or set AUTO_MIGRATE_ON_STARTUP=true for dev."
        )

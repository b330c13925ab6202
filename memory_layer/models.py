"""
Memory layer database models
PostgreSQL (JSONB) with a portable JSON fallback for SQLite
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

JSON_TYPE = JSON().with_variant(JSONB(), "postgresql")

Base = declarative_base()


# =============================================================================
# Memory records
# =============================================================================

class MemoryRecordRow(Base):
    __tablename__ = "memory_records"

    id = Column(String(255), primary_key=True)
    hashed_pseudonym = Column(Text, nullable=False)
    session_id = Column(Text)

    # { type, data, metadata } or { type, metadata, data_ciphertext, dek_ciphertext, dek_kid, ... }
    content = Column(JSON_TYPE, nullable=False)

    consent_family = Column(String(20), nullable=False)
    consent_timestamp = Column(DateTime(timezone=True), nullable=False)
    consent_version = Column(Text, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True))  # NULL = never expires

    access_count = Column(Integer, nullable=False, default=0)
    audit_receipt_id = Column(String(255), nullable=False)

    # NULL = plaintext row
    encryption_version = Column(Text)

    __table_args__ = (
        CheckConstraint(
            "consent_family IN ('personal', 'cohort', 'population')",
            name="ck_memory_records_consent_family",
        ),
        Index(
            "idx_memory_records_pseudonym_family_created",
            "hashed_pseudonym",
            "consent_family",
            "created_at",
        ),
        Index("idx_memory_records_session_created", "session_id", "created_at"),
        Index("idx_memory_records_expires", "expires_at"),
        Index("idx_memory_records_family_created", "consent_family", "created_at"),
    )


memory_records = MemoryRecordRow.__table__

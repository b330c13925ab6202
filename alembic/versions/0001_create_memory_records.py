"""Create memory records table.

Revision ID: 0001_create_memory_records
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_create_memory_records"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    json_type = postgresql.JSONB if is_postgres else sa.JSON

    op.create_table(
        "memory_records",
        sa.Column("id", sa.String(length=255), primary_key=True),
        sa.Column("hashed_pseudonym", sa.Text(), nullable=False),
        sa.Column("session_id", sa.Text()),
        sa.Column("content", json_type, nullable=False),
        sa.Column("consent_family", sa.String(length=20), nullable=False),
        sa.Column("consent_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consent_version", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True)),
        sa.Column("access_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("audit_receipt_id", sa.String(length=255), nullable=False),
        sa.CheckConstraint(
            "consent_family IN ('personal', 'cohort', 'population')",
            name="ck_memory_records_consent_family",
        ),
    )
    op.create_index(
        "idx_memory_records_pseudonym_family_created",
        "memory_records",
        ["hashed_pseudonym", "consent_family", "created_at"],
    )
    op.create_index(
        "idx_memory_records_session_created",
        "memory_records",
        ["session_id", "created_at"],
    )
    op.create_index(
        "idx_memory_records_expires",
        "memory_records",
        ["expires_at"],
    )
    op.create_index(
        "idx_memory_records_family_created",
        "memory_records",
        ["consent_family", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_memory_records_family_created", table_name="memory_records")
    op.drop_index("idx_memory_records_expires", table_name="memory_records")
    op.drop_index("idx_memory_records_session_created", table_name="memory_records")
    op.drop_index("idx_memory_records_pseudonym_family_created", table_name="memory_records")
    op.drop_table("memory_records")

"""Add encryption_version to memory records.

Revision ID: 0002_add_encryption_version
Revises: 0001_create_memory_records
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_add_encryption_version"
down_revision = "0001_create_memory_records"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # NULL marks a plaintext row
    op.add_column("memory_records", sa.Column("encryption_version", sa.Text(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("memory_records") as batch_op:
        batch_op.drop_column("encryption_version")

"""Initial schema: sync.cache_entries.

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE SCHEMA IF NOT EXISTS sync")
    op.create_table(
        "cache_entries",
        sa.Column("key", sa.Text, primary_key=True),
        sa.Column("value", sa.JSON, nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        schema="sync",
    )
    op.create_index("ix_cache_entries_expires_at", "cache_entries", ["expires_at"], schema="sync")


def downgrade() -> None:
    op.drop_index("ix_cache_entries_expires_at", table_name="cache_entries", schema="sync")
    op.drop_table("cache_entries", schema="sync")

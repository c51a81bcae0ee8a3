"""Create shards table with hierarchical memory columns.

Revision ID: 0001_shards_hierarchy
Revises:
Create Date: 2026-10-12 00:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

import core.config as config

revision = "0001_shards_hierarchy"
down_revision = None
branch_labels = None
depends_on = None


def _embedding_type(is_postgres: bool):
    if is_postgres and config.VECTOR_BACKEND_EFFECTIVE == "pgvector":
        from pgvector.sqlalchemy import Vector

        return Vector(config.EMBEDDING_DIM)
    return sa.JSON


def upgrade() -> None:
    bind = op.get_bind()
    is_postgres = bind.dialect.name == "postgresql"
    json_type = postgresql.JSONB if is_postgres else sa.JSON

    op.create_table(
        "shards",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("project", sa.String(length=100), nullable=False),
        sa.Column("type", sa.String(length=50), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="open"),
        sa.Column("creator", sa.String(length=100), nullable=True),
        sa.Column("labels", json_type, nullable=True),
        sa.Column("parent_id", sa.String(length=64), sa.ForeignKey("shards.id"), nullable=True),
        sa.Column(
            "metadata",
            json_type,
            nullable=False,
            server_default=sa.text("'{}'::jsonb") if is_postgres else sa.text("'{}'"),
        ),
        sa.Column("embedding", _embedding_type(is_postgres), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('open', 'closed', 'deferred')",
            name="check_shard_status",
        ),
    )
    op.create_index("ix_shards_project_type", "shards", ["project", "type"])
    op.create_index("ix_shards_parent_id", "shards", ["parent_id"])

    if is_postgres:
        # Hot-path lookups for the promotion heuristic
        op.execute(
            "CREATE INDEX IF NOT EXISTS ix_shards_memory_access_count "
            "ON shards (((metadata->>'access_count')::int)) "
            "WHERE type = 'memory'"
        )


def downgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute("DROP INDEX IF EXISTS ix_shards_memory_access_count")
    op.drop_index("ix_shards_parent_id", table_name="shards")
    op.drop_index("ix_shards_project_type", table_name="shards")
    op.drop_table("shards")

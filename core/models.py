"""
Context Palace Database Models
PostgreSQL + pgvector schema (SQLite for development)
"""

from datetime import datetime
import uuid
from sqlalchemy import (
    Column, Integer, String, Text, DateTime, ForeignKey, CheckConstraint, Index, JSON
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import declarative_base

import core.config as config

DB_BACKEND_EFFECTIVE = config.DB_BACKEND_EFFECTIVE
VECTOR_BACKEND_EFFECTIVE = config.VECTOR_BACKEND_EFFECTIVE

try:
    from pgvector.sqlalchemy import Vector as PgVector
    PGVECTOR_AVAILABLE = True
except Exception:
    PgVector = None
    PGVECTOR_AVAILABLE = False

if (
    DB_BACKEND_EFFECTIVE == "postgres"
    and VECTOR_BACKEND_EFFECTIVE == "pgvector"
    and PGVECTOR_AVAILABLE
):
    EMBEDDING_COLUMN_TYPE = PgVector(config.EMBEDDING_DIM)
else:
    EMBEDDING_COLUMN_TYPE = JSON

JSON_TYPE = JSONB if DB_BACKEND_EFFECTIVE == "postgres" else JSON
UUID_TYPE = UUID(as_uuid=True) if DB_BACKEND_EFFECTIVE == "postgres" else String(36)

MEMORY_TYPE = "memory"
SHARD_STATUSES = ("open", "closed", "deferred")


def _uuid_default() -> str | uuid.UUID:
    value = uuid.uuid4()
    return value if DB_BACKEND_EFFECTIVE == "postgres" else str(value)

Base = declarative_base()


# =============================================================================
# Shards (tasks, messages, knowledge, memories)
# =============================================================================

class Shard(Base):
    __tablename__ = "shards"

    id = Column(String(64), primary_key=True)
    project = Column(String(100), nullable=False, default=config.DEFAULT_PROJECT)
    type = Column(String(50), nullable=False)  # memory, task, message, ...
    title = Column(Text, nullable=False)
    content = Column(Text, nullable=False, default="")
    status = Column(String(20), nullable=False, default="open", server_default="open")
    creator = Column(String(100))
    labels = Column(JSON_TYPE, default=list)
    # Hierarchy edge: only memory shards use it, and it always points up
    parent_id = Column(String(64), ForeignKey("shards.id"))
    # access_count, last_accessed, access_log live here (written by telemetry only)
    metadata_ = Column("metadata", JSON_TYPE, nullable=False, default=dict)
    embedding = Column(EMBEDDING_COLUMN_TYPE)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'closed', 'deferred')",
            name="check_shard_status",
        ),
        Index("ix_shards_project_type", "project", "type"),
        Index("ix_shards_parent_id", "parent_id"),
    )

    @property
    def is_memory(self) -> bool:
        return self.type == MEMORY_TYPE

    @property
    def access_count(self) -> int:
        return int((self.metadata_ or {}).get("access_count") or 0)

    @property
    def last_accessed(self):
        return (self.metadata_ or {}).get("last_accessed")


# =============================================================================
# Audit Events (metadata-only)
# =============================================================================

class AuditEvent(Base):
    __tablename__ = "audit_events"

    event_id = Column(UUID_TYPE, primary_key=True, default=_uuid_default)
    project = Column(String(100), nullable=False, default=config.DEFAULT_PROJECT)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    event_type = Column(String(100), nullable=False)
    event_version = Column(Integer, default=1, nullable=False)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(String(255))
    target_type = Column(String(50), nullable=False)
    target_ids = Column(JSON_TYPE, nullable=False)
    count_affected = Column(Integer)
    reason = Column(Text)
    request_id = Column(String(255))
    metadata_ = Column("metadata", JSON_TYPE)

    __table_args__ = (
        Index("ix_audit_events_created_at", "created_at"),
        Index("ix_audit_events_event_type", "event_type"),
        Index("ix_audit_events_project", "project"),
    )


__all__ = [
    "Base",
    "Shard",
    "AuditEvent",
    "MEMORY_TYPE",
    "SHARD_STATUSES",
    "JSON_TYPE",
    "EMBEDDING_COLUMN_TYPE",
    "PGVECTOR_AVAILABLE",
]

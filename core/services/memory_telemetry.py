"""
Access telemetry for memory nodes.

Every recorded read bumps ``metadata.access_count``, stamps
``metadata.last_accessed`` and prepends ``{at, by, depth}`` to a bounded
``metadata.access_log`` (newest first). The counter is incremented inside the
UPDATE itself, so concurrent touches never lose a count; the log is computed
from a snapshot and may drop an interleaved entry under contention.

Touches are best-effort: storage failures are logged and swallowed so that a
read path never fails because telemetry could not be written.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

import core.config as config
from core.context import RequestContext, resolve_agent, resolve_project
from core.db import DB
from core.models import MEMORY_TYPE, Shard
from core.services.memory_shared import (
    ACCESS_LOG_MAX,
    TRAVERSAL_DEPTH_CAP,
    _validate_range,
    _validate_shard_id,
    logger,
    service_tool,
)

_TOUCH_SQL_POSTGRES = """
    UPDATE shards
    SET metadata = (
        CASE WHEN jsonb_typeof(metadata) = 'object' THEN metadata ELSE '{}'::jsonb END
    ) || jsonb_build_object(
        'access_count', COALESCE((metadata->>'access_count')::int, 0) + 1,
        'last_accessed', CAST(:now AS text),
        'access_log', CAST(:access_log AS jsonb)
    )
    WHERE id = :memory_id AND project = :project AND type = 'memory'
"""

_TOUCH_SQL_SQLITE = """
    UPDATE shards
    SET metadata = json_set(
        CASE WHEN json_type(metadata) = 'object' THEN metadata ELSE '{}' END,
        '$.access_count', COALESCE(json_extract(metadata, '$.access_count'), 0) + 1,
        '$.last_accessed', :now,
        '$.access_log', json(:access_log)
    )
    WHERE id = :memory_id AND project = :project AND type = 'memory'
"""


def _touch_statement(dialect_name: str):
    if dialect_name == "postgresql":
        return text(_TOUCH_SQL_POSTGRES)
    return text(_TOUCH_SQL_SQLITE)


def build_access_log(previous, agent: str, depth: int, at: str) -> list[dict]:
    """New entry first, then the most recent prior entries up to ACCESS_LOG_MAX."""
    history = previous if isinstance(previous, list) else []
    entry = {"at": at, "by": agent, "depth": depth}
    return [entry] + history[: ACCESS_LOG_MAX - 1]


def record_access(memory_id: str, agent: str, depth: int, project: Optional[str] = None) -> bool:
    """
    Record one access against a memory node in project. Never raises on storage errors.

    Ids outside the project, or shards that are not memories, are skipped.
    """
    project = project or config.DEFAULT_PROJECT
    if DB.SessionLocal is None:
        logger.warning("memory_touch_skipped", extra={"memory_id": memory_id, "reason": "db_not_initialized"})
        return False

    db = DB.SessionLocal()
    try:
        row = (
            db.query(Shard.metadata_)
            .filter(Shard.id == memory_id, Shard.project == project, Shard.type == MEMORY_TYPE)
            .first()
        )
        if row is None:
            logger.info("memory_touch_missing", extra={"memory_id": memory_id, "project": project})
            return False
        metadata = row[0] if isinstance(row[0], dict) else {}
        now = datetime.now(timezone.utc).isoformat()
        access_log = build_access_log(metadata.get("access_log"), agent, depth, now)
        statement = _touch_statement(db.get_bind().dialect.name)
        result = db.execute(
            statement,
            {
                "memory_id": memory_id,
                "project": project,
                "now": now,
                "access_log": json.dumps(access_log),
            },
        )
        db.commit()
        return result.rowcount > 0
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning(
            "memory_touch_failed",
            extra={"memory_id": memory_id, "error": str(exc), "error_type": type(exc).__name__},
        )
        return False
    finally:
        db.close()


@service_tool
def memory_touch(
    memory_id: str,
    depth: int = 0,
    agent: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Record an access event for a memory node."""
    memory_id = _validate_shard_id(memory_id, "memory_id")
    _validate_range(depth, "depth", 0, TRAVERSAL_DEPTH_CAP)
    agent_id = agent.strip() if agent and agent.strip() else resolve_agent(context)

    touched = record_access(memory_id, agent_id, depth, resolve_project(context))
    return {
        "status": "touched" if touched else "skipped",
        "id": memory_id,
        "agent": agent_id,
        "depth": depth,
    }

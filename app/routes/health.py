"""
Health and dependency endpoints.
"""

from __future__ import annotations

import os

from fastapi import APIRouter, HTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

import core.config as config
from core.db import DB, _get_schema_revisions
from core.mcp import tool_inventory_status
from core.services.memory_embeddings import embedding_circuit_breaker


router = APIRouter()


def _check_db_health() -> dict:
    if DB.engine is None:
        return {"ok": False, "error": "db_not_initialized"}

    try:
        with DB.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            memory_count = conn.execute(
                text("SELECT COUNT(*) FROM shards WHERE type = 'memory'")
            ).scalar()
    except SQLAlchemyError as exc:
        return {"ok": False, "error": str(exc)}

    current_rev, head_rev = _get_schema_revisions(DB.engine)
    schema_ok = head_rev is None or current_rev == head_rev
    return {
        "ok": schema_ok,
        "backend": config.DB_BACKEND,
        "memory_count": memory_count,
        "schema_revision": current_rev,
        "schema_expected": head_rev,
        "schema_up_to_date": schema_ok,
    }


def _embedding_status() -> dict:
    if config.EMBEDDING_PROVIDER == "none":
        return {"status": "disabled", "provider": "none"}
    breaker_status = embedding_circuit_breaker.status()
    return {
        "status": "cooldown" if breaker_status.get("open") else "ready",
        "provider": config.EMBEDDING_PROVIDER,
        "circuit_breaker": breaker_status,
    }


@router.get("/health")
async def health():
    """Health check endpoint."""
    db_health = _check_db_health()
    if not db_health.get("ok"):
        raise HTTPException(status_code=503, detail={"database": db_health})

    return {
        "status": "healthy",
        "service": "ContextPalace",
        "version": "0.1.0",
        "instance_id": os.environ.get("CP_INSTANCE_ID", "contextpalace-1"),
        "project": config.DEFAULT_PROJECT,
        "database": db_health,
        "embedding_provider": _embedding_status(),
    }


@router.get("/health/tools")
async def health_tools():
    """Tool inventory health check."""
    tool_inventory = await tool_inventory_status()
    if tool_inventory.get("tool_count", 0) == 0:
        raise HTTPException(status_code=503, detail={"tool_inventory": tool_inventory})

    return {
        "status": "healthy",
        "service": "ContextPalace",
        "tool_inventory": tool_inventory,
    }

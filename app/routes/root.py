"""
Root endpoint with service metadata.
"""

from __future__ import annotations

from fastapi import APIRouter

import core.config as config


router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "ContextPalace",
        "version": "0.1.0",
        "description": "Hierarchical shared memory for AI agents",
        "project": config.DEFAULT_PROJECT,
        "embedding_model": config.EMBEDDING_MODEL if config.EMBEDDING_PROVIDER != "none" else None,
        "hierarchy": {
            "traversal_depth_cap": config.TRAVERSAL_DEPTH_CAP,
            "soft_depth_limit": config.SOFT_DEPTH_LIMIT,
            "expand_max_depth": config.EXPAND_MAX_DEPTH,
            "access_log_max": config.ACCESS_LOG_MAX,
        },
        "endpoints": {
            "health": "/health",
            "health_tools": "/health/tools",
            "mcp": "/mcp",
        },
        "headers": {
            "agent": "X-CP-Agent",
            "project": "X-CP-Project",
        },
    }

"""
Promotion heuristic: memories read more often than their parent.

A node is a candidate when it sits at least ``min_depth`` below a root and its
own access count strictly exceeds its parent's. This is only a signal for a
human or agent deciding whether to ``memory_promote``; nothing is moved here.
Expansion traffic counts as access, so candidates can come from display
patterns as well as direct reads.
"""

from __future__ import annotations

from typing import Optional

from core.context import RequestContext, resolve_project
from core.db import open_session
from core.services.memory_shared import (
    HOT_DEFAULT_LIMIT,
    HOT_DEFAULT_MIN_DEPTH,
    MAX_RESULT_LIMIT,
    TRAVERSAL_DEPTH_CAP,
    _iso,
    _validate_limit,
    _validate_range,
    service_tool,
)
from core.services.memory_tree import fetch_tree_rows


def rank_candidates(rows, min_depth: int, limit: int) -> list[dict]:
    """Pick promotion candidates from (shard, depth, child_count) tree rows."""
    access_by_id = {shard.id: shard.access_count for shard, _, _ in rows}
    title_by_id = {shard.id: shard.title for shard, _, _ in rows}
    candidates = []
    for shard, depth, _ in rows:
        if depth < min_depth or shard.parent_id not in access_by_id:
            continue
        parent_access = access_by_id[shard.parent_id]
        if shard.access_count > parent_access:
            candidates.append(
                {
                    "id": shard.id,
                    "title": shard.title,
                    "depth": depth,
                    "access_count": shard.access_count,
                    "last_accessed": _iso(shard.last_accessed),
                    "parent_id": shard.parent_id,
                    "parent_title": title_by_id[shard.parent_id],
                    "parent_access_count": parent_access,
                }
            )
    candidates.sort(key=lambda item: item["access_count"], reverse=True)
    return candidates[:limit]


@service_tool
def memory_hot(
    min_depth: int = HOT_DEFAULT_MIN_DEPTH,
    limit: int = HOT_DEFAULT_LIMIT,
    context: Optional[RequestContext] = None,
) -> dict:
    """Rank promotion candidates across every tree in the project."""
    _validate_range(min_depth, "min_depth", 0, TRAVERSAL_DEPTH_CAP)
    _validate_limit(limit, "limit", MAX_RESULT_LIMIT)
    project = resolve_project(context)

    db = open_session()
    try:
        rows = fetch_tree_rows(db, project)
    finally:
        db.close()

    candidates = rank_candidates(rows, min_depth, limit)
    return {
        "status": "ok",
        "project": project,
        "min_depth": min_depth,
        "count": len(candidates),
        "candidates": candidates,
    }

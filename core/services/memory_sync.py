"""
Pointer block reconciliation.

Pointer blocks are a cache of each parent's children and are allowed to drift
(moves and deletes done elsewhere, manual edits). ``memory_sync`` compares
each target parent's block with its real, non-closed children:

- missing_pointer: a real child with no entry (repaired with a placeholder
  summary)
- stale_pointer: an entry whose id is not a real child any more (removed)
- malformed_block: the block cannot be parsed; reported, never rewritten

Repairs run one transaction per parent so one failure does not stop the rest.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import exists, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import aliased

from core import pointer_block
from core.audit import log_event
from core.audit_constants import EVENT_MEMORY_POINTERS_SYNCED
from core.context import RequestContext, resolve_actor_type, resolve_agent, resolve_project
from core.db import open_session
from core.errors import HierarchyError, MalformedBlockError
from core.models import MEMORY_TYPE, Shard
from core.services.memory_shared import (
    CLOSED_STATUS,
    SYNC_PLACEHOLDER_SUMMARY,
    _get_memory,
    _validate_shard_id,
    logger,
    service_tool,
)
from core.services.memory_tree import fetch_children


def diff_pointers(
    parent_id: str,
    entries: list[pointer_block.PointerEntry],
    children: list[Shard],
) -> list[dict]:
    pointer_ids = {entry.id for entry in entries}
    child_ids = {child.id for child in children}
    discrepancies = []
    for child in children:
        if child.id not in pointer_ids:
            discrepancies.append(
                {
                    "parent": parent_id,
                    "type": "missing_pointer",
                    "child": child.id,
                    "child_title": child.title,
                }
            )
    for entry in entries:
        if entry.id not in child_ids:
            discrepancies.append(
                {
                    "parent": parent_id,
                    "type": "stale_pointer",
                    "child": entry.id,
                    "child_title": entry.title,
                }
            )
    return discrepancies


def reconcile_entries(
    entries: list[pointer_block.PointerEntry],
    children: list[Shard],
) -> list[pointer_block.PointerEntry]:
    """Drop stale entries, keep the rest in order, append placeholders for missing children."""
    child_ids = {child.id for child in children}
    kept = [entry for entry in entries if entry.id in child_ids]
    kept_ids = {entry.id for entry in kept}
    for child in children:
        if child.id not in kept_ids:
            kept.append(
                pointer_block.PointerEntry(
                    id=child.id,
                    title=child.title,
                    summary=SYNC_PLACEHOLDER_SUMMARY,
                )
            )
    return kept


def _target_parents(db, project: str, parent_id: Optional[str]) -> list[Shard]:
    if parent_id is not None:
        return [_get_memory(db, project, parent_id)]
    child = aliased(Shard, name="child")
    has_children = exists().where(
        child.parent_id == Shard.id,
        child.type == MEMORY_TYPE,
        child.status != CLOSED_STATUS,
    )
    return (
        db.query(Shard)
        .filter(
            Shard.project == project,
            Shard.type == MEMORY_TYPE,
            Shard.status != CLOSED_STATUS,
            or_(has_children, Shard.content.contains(pointer_block.SUB_MEMORY_START)),
        )
        .order_by(Shard.created_at)
        .all()
    )


def _check_parent(db, project: str, parent: Shard) -> list[dict]:
    children = [child for child, _ in fetch_children(db, project, parent.id)]
    try:
        _, entries = pointer_block.parse(parent.content)
    except MalformedBlockError as exc:
        return [
            {
                "parent": parent.id,
                "type": "malformed_block",
                "child": None,
                "child_title": None,
                "message": str(exc),
            }
        ]
    return diff_pointers(parent.id, entries, children)


def _repair_parent(project: str, parent_id: str, context: Optional[RequestContext]) -> Optional[dict]:
    """Rewrite one parent's block under a row lock; returns None when nothing changed."""
    db = open_session()
    try:
        parent = _get_memory(db, project, parent_id, lock=True)
        _, entries = pointer_block.parse(parent.content)
        children = [child for child, _ in fetch_children(db, project, parent.id)]
        desired = reconcile_entries(entries, children)
        if desired == entries:
            return None
        parent.content = pointer_block.replace_all(parent.content, desired)
        removed = len({entry.id for entry in entries} - {entry.id for entry in desired})
        added = len({entry.id for entry in desired} - {entry.id for entry in entries})
        log_event(
            db,
            event_type=EVENT_MEMORY_POINTERS_SYNCED,
            actor_type=resolve_actor_type(context),
            actor_id=resolve_agent(context),
            project=project,
            target_ids=[parent.id],
            metadata={"added": added, "removed": removed},
        )
        db.commit()
        return {"parent": parent.id, "added": added, "removed": removed}
    finally:
        db.close()


@service_tool
def memory_sync(
    parent_id: Optional[str] = None,
    dry_run: bool = False,
    context: Optional[RequestContext] = None,
) -> dict:
    """
    Reconcile pointer blocks with real children for one parent or all parents.

    The discrepancy list always describes the state before any repair.
    """
    if parent_id is not None:
        parent_id = _validate_shard_id(parent_id, "parent_id")
    project = resolve_project(context)

    db = open_session()
    try:
        parents = _target_parents(db, project, parent_id)
        discrepancies: list[dict] = []
        by_parent: dict[str, list[dict]] = {}
        for parent in parents:
            found = _check_parent(db, project, parent)
            if found:
                by_parent[parent.id] = found
                discrepancies.extend(found)
    finally:
        db.close()

    repaired: list[dict] = []
    failures: list[dict] = []
    if not dry_run:
        for affected_id, found in by_parent.items():
            if any(item["type"] == "malformed_block" for item in found):
                failures.append(
                    {
                        "parent": affected_id,
                        "error_type": MalformedBlockError.error_type,
                        "message": "pointer block is malformed; fix the content by hand",
                    }
                )
                continue
            try:
                result = _repair_parent(project, affected_id, context)
            except (HierarchyError, SQLAlchemyError) as exc:
                logger.warning(
                    "memory_sync_repair_failed",
                    extra={"parent_id": affected_id, "error": str(exc), "error_type": type(exc).__name__},
                )
                failures.append(
                    {
                        "parent": affected_id,
                        "error_type": getattr(exc, "error_type", "storage_error"),
                        "message": str(exc),
                    }
                )
                continue
            if result is not None:
                repaired.append(result)

    if discrepancies:
        logger.info(
            "memory_sync_completed",
            extra={
                "project": project,
                "parents_checked": len(parents),
                "discrepancy_count": len(discrepancies),
                "repaired_count": len(repaired),
                "dry_run": dry_run,
            },
        )
    return {
        "status": "ok" if not failures else "partial",
        "dry_run": dry_run,
        "parents_checked": len(parents),
        "discrepancies": discrepancies,
        "by_parent": by_parent,
        "fixed": bool(repaired),
        "parents_repaired": repaired,
        "failures": failures,
    }

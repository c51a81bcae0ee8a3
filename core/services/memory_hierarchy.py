"""
Sub-memory mutations: create, delete, move and promote.

The tree is authoritative (``Shard.parent_id``); every parent also carries a
pointer block listing its children. Each mutation here writes both inside one
session and commits once, so readers see either the old pair or the new pair.
Drift caused elsewhere is left for ``memory_sync``.

Cycle prevention on move reads the new parent's ancestor chain after the
affected rows are locked, inside the same transaction as the re-parenting
write. This is best-effort: two moves that lock disjoint rows can still race
into a cycle, which ``memory_cycle_audit`` reports after the fact.
"""

from __future__ import annotations

from collections import OrderedDict
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError

from core import pointer_block
from core.audit import list_audit_events, log_event
from core.audit_constants import (
    EVENT_MEMORY_CREATED,
    EVENT_MEMORY_DELETED,
    EVENT_MEMORY_MOVED,
    EVENT_MEMORY_PROMOTED,
)
import core.config as config
from core.context import RequestContext, resolve_actor_type, resolve_agent, resolve_project
from core.db import open_session
from core.errors import (
    CycleRejectedError,
    DepthExceededError,
    HierarchyConflictError,
    ValidationIssue,
)
from core.models import MEMORY_TYPE, Shard
from core.services.memory_shared import (
    MAX_RESULT_LIMIT,
    MAX_SUMMARY_LENGTH,
    MAX_TEXT_LENGTH,
    MAX_TITLE_LENGTH,
    MOVE_PLACEHOLDER_SUMMARY,
    SOFT_DEPTH_LIMIT,
    TRAVERSAL_DEPTH_CAP,
    _get_memory,
    _lock_memories,
    _new_shard_id,
    _normalize_labels,
    _validate_limit,
    _validate_embedding_vector,
    _validate_optional_text,
    _validate_required_text,
    _validate_shard_id,
    logger,
    service_tool,
)
from core.services.memory_tree import (
    chain_reaches_root,
    fetch_ancestor_chain,
    fetch_descendant_ids,
    memory_depth,
)


def _validate_node_fields(title: str, body: Optional[str], embedding) -> None:
    _validate_required_text(title, "title", MAX_TITLE_LENGTH)
    _validate_optional_text(body, "body", MAX_TEXT_LENGTH)
    _validate_embedding_vector(embedding, "embedding", config.EMBEDDING_DIM)


def _new_memory(project: str, agent: str, title: str, body: Optional[str], labels, embedding, parent_id=None) -> Shard:
    return Shard(
        id=_new_shard_id(),
        project=project,
        type=MEMORY_TYPE,
        title=title.strip(),
        content=body or "",
        status="open",
        labels=labels,
        parent_id=parent_id,
        creator=agent,
        metadata_={},
        embedding=list(embedding) if embedding is not None else None,
    )


def _touch_updated(shard: Shard) -> None:
    shard.updated_at = datetime.utcnow()


@service_tool
def memory_create(
    title: str,
    body: Optional[str] = "",
    labels: Optional[list[str]] = None,
    embedding: Optional[list[float]] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Create a root memory node (no parent, no pointer entry anywhere)."""
    _validate_node_fields(title, body, embedding)
    normalized_labels = _normalize_labels(labels)
    project = resolve_project(context)
    agent = resolve_agent(context)

    db = open_session()
    try:
        memory = _new_memory(project, agent, title, body, normalized_labels, embedding)
        db.add(memory)
        log_event(
            db,
            event_type=EVENT_MEMORY_CREATED,
            actor_type=resolve_actor_type(context),
            actor_id=agent,
            project=project,
            target_ids=[memory.id],
            metadata={"parent_id": None, "depth": 0},
        )
        db.commit()
        return {
            "status": "created",
            "id": memory.id,
            "title": memory.title,
            "parent_id": None,
            "depth": 0,
        }
    except IntegrityError as exc:
        db.rollback()
        raise HierarchyConflictError(f"could not create memory: {exc.orig}") from exc
    finally:
        db.close()


@service_tool
def memory_add_sub(
    parent_id: str,
    title: str,
    summary: str,
    body: Optional[str] = "",
    labels: Optional[list[str]] = None,
    embedding: Optional[list[float]] = None,
    allow_deep: bool = False,
    context: Optional[RequestContext] = None,
) -> dict:
    """
    Create a memory under parent_id and add its pointer entry to the parent.

    ``summary`` is the final, approved trigger summary for the pointer entry.
    A child landing at depth SOFT_DEPTH_LIMIT or deeper is refused with
    DepthExceededError unless ``allow_deep`` is set.
    """
    parent_id = _validate_shard_id(parent_id, "parent_id")
    _validate_node_fields(title, body, embedding)
    _validate_required_text(summary, "summary", MAX_SUMMARY_LENGTH)
    normalized_labels = _normalize_labels(labels)
    project = resolve_project(context)
    agent = resolve_agent(context)

    db = open_session()
    try:
        parent = _get_memory(db, project, parent_id, lock=True)
        depth = memory_depth(db, project, parent.id) + 1
        if depth >= SOFT_DEPTH_LIMIT and not allow_deep:
            raise DepthExceededError(
                f"sub-memory would be at depth {depth} (soft limit {SOFT_DEPTH_LIMIT}); "
                "confirm and retry with allow_deep",
                depth=depth,
            )
        if depth > TRAVERSAL_DEPTH_CAP:
            raise DepthExceededError(
                f"sub-memory would be at depth {depth}, beyond the traversal cap {TRAVERSAL_DEPTH_CAP}",
                depth=depth,
            )

        child = _new_memory(project, agent, title, body, normalized_labels, embedding, parent_id=parent.id)
        db.add(child)

        accepted_summary = summary.strip()
        parent.content = pointer_block.append(
            parent.content,
            pointer_block.PointerEntry(id=child.id, title=child.title, summary=accepted_summary),
        )
        _touch_updated(parent)

        log_event(
            db,
            event_type=EVENT_MEMORY_CREATED,
            actor_type=resolve_actor_type(context),
            actor_id=agent,
            project=project,
            target_ids=[child.id],
            metadata={"parent_id": parent.id, "depth": depth},
        )
        db.commit()
        if depth >= SOFT_DEPTH_LIMIT:
            logger.info("memory_deep_create", extra={"memory_id": child.id, "depth": depth})
        return {
            "status": "created",
            "id": child.id,
            "title": child.title,
            "parent_id": parent.id,
            "summary": accepted_summary,
            "depth": depth,
        }
    except IntegrityError as exc:
        db.rollback()
        raise HierarchyConflictError(f"could not create sub-memory: {exc.orig}") from exc
    finally:
        db.close()


@service_tool
def memory_delete(
    memory_id: str,
    recursive: bool = False,
    reparent_children: bool = False,
    context: Optional[RequestContext] = None,
) -> dict:
    """
    Delete a memory node and drop its entry from the parent's pointer block.

    With children present the caller must choose: ``recursive`` removes the
    whole subtree (deepest first), ``reparent_children`` turns the direct
    children into roots. Neither is an error.
    """
    memory_id = _validate_shard_id(memory_id, "memory_id")
    if recursive and reparent_children:
        raise ValidationIssue(
            "recursive and reparent_children are mutually exclusive",
            field="reparent_children",
            error_type="conflicting_options",
        )
    project = resolve_project(context)
    agent = resolve_agent(context)

    db = open_session()
    try:
        node = _get_memory(db, project, memory_id)
        parent_id = node.parent_id
        locked = _lock_memories(db, project, [memory_id, parent_id])
        node = locked[memory_id]
        if node.parent_id != parent_id:
            raise HierarchyConflictError(f"memory {memory_id} was moved concurrently; retry")
        parent = locked.get(parent_id) if parent_id else None

        children = (
            db.query(Shard)
            .filter(Shard.parent_id == memory_id, Shard.type == MEMORY_TYPE)
            .all()
        )
        deleted: list[str] = []
        reparented: list[str] = []
        if children and not recursive:
            if not reparent_children:
                raise ValidationIssue(
                    f"memory has {len(children)} children. Use recursive or move children first",
                    field="recursive",
                    error_type="has_children",
                )
            for child in children:
                child.parent_id = None
                _touch_updated(child)
                reparented.append(child.id)
            db.flush()

        if recursive:
            by_depth: OrderedDict[int, list[str]] = OrderedDict()
            for descendant_id, depth in fetch_descendant_ids(db, project, memory_id):
                by_depth.setdefault(depth, []).append(descendant_id)
            # One level at a time, deepest first, so no row outlives its parent.
            for ids in by_depth.values():
                db.query(Shard).filter(Shard.id.in_(ids)).delete(synchronize_session=False)
                deleted.extend(ids)

        parent_updated = None
        if parent is not None:
            main_content, entries = pointer_block.parse(parent.content)
            kept = [entry for entry in entries if entry.id != memory_id]
            # Only rewrite when an entry was dropped; other formatting is left as found.
            if len(kept) != len(entries):
                parent.content = pointer_block.render(main_content, kept)
                _touch_updated(parent)
                parent_updated = parent.id

        db.delete(node)
        deleted.append(memory_id)

        log_event(
            db,
            event_type=EVENT_MEMORY_DELETED,
            actor_type=resolve_actor_type(context),
            actor_id=agent,
            project=project,
            target_ids=deleted,
            metadata={
                "parent_id": parent_id,
                "recursive": recursive,
                "reparented_count": len(reparented),
            },
        )
        db.commit()
        return {
            "status": "deleted",
            "deleted": deleted,
            "parent_updated": parent_updated,
            "reparented": reparented,
        }
    except IntegrityError as exc:
        db.rollback()
        raise HierarchyConflictError(f"could not delete memory {memory_id}: {exc.orig}") from exc
    finally:
        db.close()


def _check_no_cycle(db, project: str, memory_id: str, new_parent_id: str) -> None:
    """Walk up from the candidate parent; memory_id must not appear on the way to a root."""
    chain = fetch_ancestor_chain(db, project, new_parent_id)
    if any(shard.id == memory_id for shard, _ in chain):
        raise CycleRejectedError(
            f"cannot move {memory_id} under {new_parent_id}: {new_parent_id} is its descendant"
        )
    if not chain_reaches_root(chain):
        raise CycleRejectedError(
            f"cannot move {memory_id} under {new_parent_id}: ancestor chain does not reach a root "
            f"within {TRAVERSAL_DEPTH_CAP} levels"
        )


def _move_in_session(db, project: str, memory_id: str, new_parent_id: Optional[str]) -> tuple[Shard, Optional[str]]:
    """Re-parent memory_id and rewrite both pointer blocks; the caller commits."""
    if new_parent_id == memory_id:
        raise CycleRejectedError("cannot move a memory under itself")

    node = _get_memory(db, project, memory_id)
    old_parent_id = node.parent_id
    if new_parent_id is not None:
        _get_memory(db, project, new_parent_id)

    locked = _lock_memories(db, project, [memory_id, old_parent_id, new_parent_id])
    node = locked[memory_id]
    if node.parent_id != old_parent_id:
        raise HierarchyConflictError(f"memory {memory_id} was moved concurrently; retry")

    if new_parent_id is not None:
        _check_no_cycle(db, project, memory_id, new_parent_id)

    summary = MOVE_PLACEHOLDER_SUMMARY
    old_parent = locked.get(old_parent_id) if old_parent_id else None
    if old_parent is not None:
        entry = pointer_block.find_entry(old_parent.content, memory_id)
        if entry is not None and entry.summary:
            summary = entry.summary
        old_parent.content = pointer_block.remove_by_id(old_parent.content, memory_id)
        _touch_updated(old_parent)

    node.parent_id = new_parent_id
    _touch_updated(node)

    if new_parent_id is not None:
        new_parent = locked[new_parent_id]
        new_parent.content = pointer_block.append(
            new_parent.content,
            pointer_block.PointerEntry(id=node.id, title=node.title, summary=summary),
        )
        _touch_updated(new_parent)
    return node, old_parent_id


@service_tool
def memory_move(
    memory_id: str,
    new_parent_id: Optional[str] = None,
    to_root: bool = False,
    context: Optional[RequestContext] = None,
) -> dict:
    """Move a memory under new_parent_id, or to the root level with to_root."""
    memory_id = _validate_shard_id(memory_id, "memory_id")
    if to_root and new_parent_id is not None:
        raise ValidationIssue(
            "pass either new_parent_id or to_root, not both",
            field="new_parent_id",
            error_type="conflicting_options",
        )
    if not to_root:
        if new_parent_id is None:
            raise ValidationIssue(
                "new_parent_id is required unless to_root is set",
                field="new_parent_id",
                error_type="required",
            )
        new_parent_id = _validate_shard_id(new_parent_id, "new_parent_id")
    project = resolve_project(context)
    agent = resolve_agent(context)

    db = open_session()
    try:
        _, old_parent_id = _move_in_session(db, project, memory_id, new_parent_id)
        log_event(
            db,
            event_type=EVENT_MEMORY_MOVED,
            actor_type=resolve_actor_type(context),
            actor_id=agent,
            project=project,
            target_ids=[memory_id],
            metadata={"old_parent": old_parent_id, "new_parent": new_parent_id},
        )
        db.commit()
        return {
            "status": "moved",
            "id": memory_id,
            "old_parent": old_parent_id,
            "new_parent": new_parent_id,
        }
    except IntegrityError as exc:
        db.rollback()
        raise HierarchyConflictError(f"could not move memory {memory_id}: {exc.orig}") from exc
    finally:
        db.close()


@service_tool
def memory_promote(memory_id: str, context: Optional[RequestContext] = None) -> dict:
    """Move a memory up one level: to its grandparent, or to root under a root parent."""
    memory_id = _validate_shard_id(memory_id, "memory_id")
    project = resolve_project(context)
    agent = resolve_agent(context)

    db = open_session()
    try:
        _get_memory(db, project, memory_id)
        chain = fetch_ancestor_chain(db, project, memory_id)
        depth = chain[-1][1]
        if depth == 0:
            raise ValidationIssue(
                f"memory {memory_id} is already at root level",
                field="memory_id",
                error_type="already_root",
            )
        # chain[-2] is the parent; its own parent (if any) is the new home
        new_parent_id = chain[-2][0].parent_id
        new_depth = depth - 1

        _, old_parent_id = _move_in_session(db, project, memory_id, new_parent_id)
        log_event(
            db,
            event_type=EVENT_MEMORY_PROMOTED,
            actor_type=resolve_actor_type(context),
            actor_id=agent,
            project=project,
            target_ids=[memory_id],
            metadata={"old_parent": old_parent_id, "new_parent": new_parent_id, "new_depth": new_depth},
        )
        db.commit()
        return {
            "status": "promoted",
            "id": memory_id,
            "old_parent": old_parent_id,
            "new_parent": new_parent_id,
            "new_depth": new_depth,
        }
    except IntegrityError as exc:
        db.rollback()
        raise HierarchyConflictError(f"could not promote memory {memory_id}: {exc.orig}") from exc
    finally:
        db.close()


def find_cycles(parents: dict[str, Optional[str]]) -> list[dict]:
    """Check every node's ancestor walk in a {id: parent_id} map."""
    problems = []
    for node_id in parents:
        seen = {node_id}
        current = parents[node_id]
        steps = 0
        while current is not None:
            if current in seen:
                problems.append({"id": node_id, "problem": "cycle", "revisits": current})
                break
            if current not in parents:
                problems.append({"id": node_id, "problem": "dangling_parent", "parent_id": current})
                break
            steps += 1
            if steps > TRAVERSAL_DEPTH_CAP:
                problems.append({"id": node_id, "problem": "depth_exceeded", "depth": steps})
                break
            seen.add(current)
            current = parents[current]
    return problems


@service_tool
def memory_cycle_audit(context: Optional[RequestContext] = None) -> dict:
    """
    Report memory nodes whose ancestor walk loops, dangles, or exceeds the cap.

    Read-only. Concurrent moves can, rarely, slip past the in-transaction check;
    this is how such damage is found afterwards.
    """
    project = resolve_project(context)

    db = open_session()
    try:
        rows = (
            db.query(Shard.id, Shard.parent_id)
            .filter(Shard.project == project, Shard.type == MEMORY_TYPE)
            .all()
        )
    finally:
        db.close()

    problems = find_cycles({row_id: parent_id for row_id, parent_id in rows})
    for problem in problems:
        logger.warning("memory_cycle_detected", extra={"project": project, **problem})
    return {
        "status": "ok" if not problems else "problems_found",
        "project": project,
        "checked": len(rows),
        "problems": problems,
    }


def run_cycle_audit_tick() -> dict:
    """Periodic audit entry point for the app's background loop."""
    return memory_cycle_audit()


@service_tool
def memory_audit_events(
    event_type: Optional[str] = None,
    limit: int = 50,
    cursor: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> dict:
    """Newest-first hierarchy audit events for the caller's project."""
    _validate_optional_text(event_type, "event_type", 100)
    _validate_optional_text(cursor, "cursor", 64)
    _validate_limit(limit, "limit", MAX_RESULT_LIMIT)
    project = resolve_project(context)

    db = open_session()
    try:
        result = list_audit_events(db, project=project, event_type=event_type, limit=limit, cursor=cursor)
    finally:
        db.close()
    result["project"] = project
    return result

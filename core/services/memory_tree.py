"""
Tree traversal and display for hierarchical memories.

All walks are recursive CTEs bounded by TRAVERSAL_DEPTH_CAP so that an
undetected cycle or a pathological chain cannot run away:

- downward from one root (or every root) for the flat tree
- upward from a node for its root path
- bounded expansion that materializes real children and touches every node
  it reads (see ``memory_expand``)
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import Integer, func, literal_column, select
from sqlalchemy.orm import aliased

from core import pointer_block
from core.context import RequestContext, resolve_agent, resolve_project
from core.db import open_session
from core.errors import MalformedBlockError
from core.models import MEMORY_TYPE, Shard
from core.services.memory_shared import (
    CLOSED_STATUS,
    EXPAND_MAX_DEPTH,
    TRAVERSAL_DEPTH_CAP,
    _get_memory,
    _iso,
    _serialize_memory,
    _validate_range,
    _validate_shard_id,
    service_tool,
)
from core.services.memory_telemetry import record_access

TREE_FORMATS = ("flat", "nested", "text")


# =============================================================================
# Recursive queries
# =============================================================================

def _descendant_cte(project: str, root_id: Optional[str] = None, include_closed: bool = False):
    """Rows (id, parent_id, depth) for a subtree, or every tree when root_id is None."""
    anchor_filters = [Shard.project == project, Shard.type == MEMORY_TYPE]
    child = aliased(Shard, name="child")
    child_filters = [child.project == project, child.type == MEMORY_TYPE]
    if not include_closed:
        anchor_filters.append(Shard.status != CLOSED_STATUS)
        child_filters.append(child.status != CLOSED_STATUS)
    if root_id is None:
        anchor_filters.append(Shard.parent_id.is_(None))
    else:
        anchor_filters.append(Shard.id == root_id)

    tree = (
        select(
            Shard.id.label("id"),
            Shard.parent_id.label("parent_id"),
            literal_column("0", Integer).label("depth"),
        )
        .where(*anchor_filters)
        .cte("memory_tree", recursive=True)
    )
    parent = tree.alias("parent_tree")
    return tree.union_all(
        select(child.id, child.parent_id, parent.c.depth + 1)
        .where(child.parent_id == parent.c.id, parent.c.depth < TRAVERSAL_DEPTH_CAP, *child_filters)
    )


def _ancestor_cte(project: str, memory_id: str):
    """Rows (id, parent_id, depth) walking up from memory_id; depth counts from the node."""
    start = (
        select(
            Shard.id.label("id"),
            Shard.parent_id.label("parent_id"),
            literal_column("0", Integer).label("depth"),
        )
        .where(Shard.project == project, Shard.id == memory_id)
        .cte("memory_path", recursive=True)
    )
    walk = start.alias("walk")
    ancestor = aliased(Shard, name="ancestor")
    return start.union_all(
        select(ancestor.id, ancestor.parent_id, walk.c.depth + 1)
        .where(ancestor.id == walk.c.parent_id, walk.c.depth < TRAVERSAL_DEPTH_CAP)
    )


def _child_count_column():
    counted = aliased(Shard, name="counted")
    return (
        select(func.count(counted.id))
        .where(
            counted.parent_id == Shard.id,
            counted.type == MEMORY_TYPE,
            counted.status != CLOSED_STATUS,
        )
        .correlate(Shard)
        .scalar_subquery()
        .label("child_count")
    )


def fetch_tree_rows(db, project: str, root_id: Optional[str] = None) -> list[tuple[Shard, int, int]]:
    """(shard, depth, child_count) ordered by depth then creation, one row per node."""
    tree = _descendant_cte(project, root_id)
    rows = (
        db.query(Shard, tree.c.depth, _child_count_column())
        .join(tree, Shard.id == tree.c.id)
        .order_by(tree.c.depth, Shard.created_at)
        .all()
    )
    seen: set[str] = set()
    result = []
    for shard, depth, child_count in rows:
        if shard.id in seen:
            continue
        seen.add(shard.id)
        result.append((shard, int(depth), int(child_count or 0)))
    return result


def fetch_descendant_ids(db, project: str, memory_id: str) -> list[tuple[str, int]]:
    """Every memory below memory_id (closed ones included) as (id, depth), deepest first."""
    tree = _descendant_cte(project, memory_id, include_closed=True)
    rows = db.execute(select(tree.c.id, tree.c.depth).order_by(tree.c.depth.desc())).all()
    seen: set[str] = {memory_id}
    result = []
    for row_id, depth in rows:
        if row_id in seen:
            continue
        seen.add(row_id)
        result.append((row_id, int(depth)))
    return result


def fetch_ancestor_chain(db, project: str, memory_id: str) -> list[tuple[Shard, int]]:
    """
    Root-to-node chain as (shard, depth) with root = 0.

    The walk runs upward, so its raw depth counts from the node itself; each
    entry is renormalized to ``max(raw) - raw`` so the root lands on 0 and the
    node on the chain length.
    """
    path = _ancestor_cte(project, memory_id)
    rows = (
        db.query(Shard, path.c.depth)
        .join(path, Shard.id == path.c.id)
        .order_by(path.c.depth)
        .all()
    )
    chain: list[tuple[Shard, int]] = []
    seen: set[str] = set()
    for shard, raw_depth in rows:
        if shard.id in seen:
            break
        seen.add(shard.id)
        chain.append((shard, int(raw_depth)))
    if not chain:
        return []
    max_depth = max(raw for _, raw in chain)
    normalized = [(shard, max_depth - raw) for shard, raw in chain]
    normalized.sort(key=lambda item: item[1])
    return normalized


def chain_reaches_root(chain: list[tuple[Shard, int]]) -> bool:
    return bool(chain) and chain[0][0].parent_id is None


def memory_depth(db, project: str, memory_id: str) -> int:
    chain = fetch_ancestor_chain(db, project, memory_id)
    return chain[-1][1] if chain else 0


def fetch_children(db, project: str, parent_id: str) -> list[tuple[Shard, int]]:
    """Direct non-closed memory children as (shard, child_count), oldest first."""
    return (
        db.query(Shard, _child_count_column())
        .filter(
            Shard.project == project,
            Shard.parent_id == parent_id,
            Shard.type == MEMORY_TYPE,
            Shard.status != CLOSED_STATUS,
        )
        .order_by(Shard.created_at)
        .all()
    )


# =============================================================================
# Serialization and rendering
# =============================================================================

def _split_content(content: Optional[str]) -> tuple[str, list[pointer_block.PointerEntry], Optional[str]]:
    try:
        main_content, entries = pointer_block.parse(content)
    except MalformedBlockError as exc:
        return content or "", [], str(exc)
    return main_content, entries, None


def _serialize_tree_node(
    shard: Shard,
    depth: int,
    child_count: int,
    summary: Optional[str],
) -> dict:
    return {
        "id": shard.id,
        "title": shard.title,
        "parent_id": shard.parent_id,
        "depth": depth,
        "status": shard.status,
        "labels": list(shard.labels or []),
        "access_count": shard.access_count,
        "last_accessed": _iso(shard.last_accessed),
        "child_count": child_count,
        "summary": summary,
    }


def build_flat_tree(rows: list[tuple[Shard, int, int]]) -> list[dict]:
    """Flat node list; each node's summary comes from its parent's pointer block."""
    entries_by_parent: dict[str, dict[str, str]] = {}
    for shard, _, _ in rows:
        _, entries, _ = _split_content(shard.content)
        entries_by_parent[shard.id] = {entry.id: entry.summary for entry in entries}
    nodes = []
    for shard, depth, child_count in rows:
        summary = entries_by_parent.get(shard.parent_id or "", {}).get(shard.id)
        nodes.append(_serialize_tree_node(shard, depth, child_count, summary))
    return nodes


def build_nested_tree(nodes: list[dict]) -> list[dict]:
    """Group a flat node list by parent id; nodes whose parent is absent become roots."""
    by_id = {node["id"]: dict(node, children=[]) for node in nodes}
    roots = []
    for node in nodes:
        item = by_id[node["id"]]
        parent = by_id.get(node["parent_id"]) if node["parent_id"] else None
        if parent is None:
            roots.append(item)
        else:
            parent["children"].append(item)
    return roots


def render_tree_text(nested: list[dict], show_stats: bool = False) -> str:
    lines: list[str] = []

    def _render(node: dict, prefix: str, is_last: bool, is_root: bool, parent_count: Optional[int]):
        if is_root:
            line = ""
        else:
            line = prefix + ("└── " if is_last else "├── ")
        line += f"{node['title']} ({node['id']})"
        if show_stats:
            line += f"  {node['access_count']} reads"
            if parent_count is not None and node["access_count"] > parent_count:
                line += "  ★"
        lines.append(line)

        if is_root:
            child_prefix = ""
        else:
            child_prefix = prefix + ("    " if is_last else "│   ")
        children = node.get("children") or []
        for index, child in enumerate(children):
            _render(child, child_prefix, index == len(children) - 1, False, node["access_count"])

    for root in nested:
        _render(root, "", True, True, None)
    return "\n".join(lines)


# =============================================================================
# Services
# =============================================================================

@service_tool
def memory_tree(
    root_id: Optional[str] = None,
    max_depth: int = 0,
    output_format: str = "flat",
    show_stats: bool = False,
    context: Optional[RequestContext] = None,
) -> dict:
    """
    Whole-hierarchy view from one root (or every root).

    ``max_depth`` of 0 means "down to the traversal cap". ``output_format``
    selects the flat node list, the nested structure, or a box-drawing outline.
    """
    if root_id is not None:
        root_id = _validate_shard_id(root_id, "root_id")
    _validate_range(max_depth, "max_depth", 0, TRAVERSAL_DEPTH_CAP)
    if output_format not in TREE_FORMATS:
        raise ValueError(f"output_format must be one of: {', '.join(TREE_FORMATS)}")
    project = resolve_project(context)

    db = open_session()
    try:
        if root_id is not None:
            _get_memory(db, project, root_id)
        rows = fetch_tree_rows(db, project, root_id)
    finally:
        db.close()

    if max_depth > 0:
        rows = [row for row in rows if row[1] <= max_depth]
    nodes = build_flat_tree(rows)

    payload = {
        "status": "ok",
        "project": project,
        "root_id": root_id,
        "count": len(nodes),
        "format": output_format,
    }
    if output_format == "flat":
        payload["nodes"] = nodes
    elif output_format == "nested":
        payload["tree"] = build_nested_tree(nodes)
    else:
        payload["text"] = render_tree_text(build_nested_tree(nodes), show_stats=show_stats)
    return payload


@service_tool
def memory_children(
    parent_id: str,
    include_content: bool = False,
    context: Optional[RequestContext] = None,
) -> dict:
    """List the real (non-closed) children of a memory node."""
    parent_id = _validate_shard_id(parent_id, "parent_id")
    project = resolve_project(context)

    db = open_session()
    try:
        _get_memory(db, project, parent_id)
        rows = fetch_children(db, project, parent_id)
        children = []
        for shard, child_count in rows:
            item = _serialize_memory(shard, include_content=include_content)
            item["child_count"] = int(child_count or 0)
            children.append(item)
    finally:
        db.close()

    return {
        "status": "ok",
        "parent_id": parent_id,
        "count": len(children),
        "children": children,
    }


@service_tool
def memory_path(memory_id: str, context: Optional[RequestContext] = None) -> dict:
    """Ordered chain from the root down to memory_id."""
    memory_id = _validate_shard_id(memory_id, "memory_id")
    project = resolve_project(context)

    db = open_session()
    try:
        _get_memory(db, project, memory_id)
        chain = fetch_ancestor_chain(db, project, memory_id)
        path = [
            {"id": shard.id, "title": shard.title, "depth": depth}
            for shard, depth in chain
        ]
        complete = chain_reaches_root(chain)
    finally:
        db.close()

    return {
        "status": "ok",
        "id": memory_id,
        "depth": path[-1]["depth"] if path else 0,
        "complete": complete,
        "path": path,
    }


def _pointer_children(entries: list[pointer_block.PointerEntry]) -> list[dict]:
    return [
        {"id": entry.id, "title": entry.title, "summary": entry.summary, "expanded": False}
        for entry in entries
    ]


def _expand_node(
    db,
    project: str,
    agent: str,
    shard: Shard,
    depth: int,
    level: int,
    max_depth: int,
    child_count: Optional[int],
    visited: set[str],
) -> dict:
    main_content, entries, block_error = _split_content(shard.content)
    node = {
        "id": shard.id,
        "title": shard.title,
        "content": main_content,
        "labels": list(shard.labels or []),
        "status": shard.status,
        "depth": depth,
        "access_count": shard.access_count,
        "last_accessed": _iso(shard.last_accessed),
    }
    if child_count is not None:
        node["child_count"] = child_count
    if block_error:
        node["pointer_block_error"] = block_error

    if level >= max_depth or child_count == 0:
        node["expanded"] = False
        node["children"] = _pointer_children(entries)
        return node

    node["expanded"] = True
    node["children"] = []
    for child, grandchild_count in fetch_children(db, project, shard.id):
        if child.id in visited:
            continue
        visited.add(child.id)
        # Every real child read here counts as an access.
        record_access(child.id, agent, depth + 1, project)
        node["children"].append(
            _expand_node(
                db,
                project,
                agent,
                child,
                depth + 1,
                level + 1,
                max_depth,
                int(grandchild_count or 0),
                visited,
            )
        )
    return node


@service_tool
def memory_expand(
    memory_id: str,
    max_depth: int = 1,
    context: Optional[RequestContext] = None,
) -> dict:
    """
    Read a memory node and materialize its real children down to max_depth.

    Nodes at the depth limit list their own pointer-block entries instead of
    being expanded. Each node read (the starting node and every real child
    fetched) is touched with its own depth, so heavy expansion traffic raises
    descendants' access counts and can surface them in ``memory_hot``.
    """
    memory_id = _validate_shard_id(memory_id, "memory_id")
    _validate_range(max_depth, "max_depth", 0, EXPAND_MAX_DEPTH)
    project = resolve_project(context)
    agent = resolve_agent(context)

    db = open_session()
    try:
        shard = _get_memory(db, project, memory_id)
        depth = memory_depth(db, project, memory_id)
        record_access(shard.id, agent, depth, project)
        tree = _expand_node(db, project, agent, shard, depth, 0, max_depth, None, {shard.id})
    finally:
        db.close()

    return {
        "status": "ok",
        "max_depth": max_depth,
        "memory": tree,
    }

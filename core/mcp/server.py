"""
MCP server wiring and tool registration.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional

from fastmcp import FastMCP

import core.config as config
from core.errors import HierarchyError
from core.mcp.context_middleware import MCPContextMiddleware, get_current_context
from core.services import memory_hierarchy, memory_promotion, memory_telemetry
from core.services import memory_sync as memory_sync_service
from core.services import memory_tree as memory_tree_service
from core.services.memory_embeddings import precompute_embedding
from core.services.memory_shared import hierarchy_error_payload

READ_ONLY_TOOL_ANNOTATIONS = {"readOnlyHint": True}
DESTRUCTIVE_TOOL_ANNOTATIONS = {"destructiveHint": True}

mcp = FastMCP("ContextPalace")

_REGISTERED_TOOLS: list[tuple[Callable[..., dict], tuple[Any, ...], dict[str, Any]]] = []
_TOOL_REGISTRY_LOCK = threading.Lock()
_LAST_TOOL_COUNT: Optional[int] = None


def mcp_tool(*args, **kwargs):
    """Register a tool with FastMCP and keep a local registry for rebinding."""
    def decorator(fn: Callable[..., dict]):
        _REGISTERED_TOOLS.append((fn, args, kwargs))
        mcp.tool(*args, **kwargs)(fn)
        return fn
    return decorator


def _record_tool_inventory_count(tool_count: int) -> None:
    global _LAST_TOOL_COUNT
    with _TOOL_REGISTRY_LOCK:
        if tool_count == 0 and (_LAST_TOOL_COUNT is None or _LAST_TOOL_COUNT > 0):
            config.logger.warning(
                "tool_inventory_empty",
                extra={"tool_count": tool_count},
            )
        elif tool_count > 0 and _LAST_TOOL_COUNT == 0:
            config.logger.info(
                "tool_inventory_restored",
                extra={"tool_count": tool_count},
            )
        _LAST_TOOL_COUNT = tool_count


async def tool_inventory_status() -> dict:
    """Return registered tool names and count."""
    tools = await mcp.get_tools()
    tool_names = sorted(tools.keys())
    tool_count = len(tool_names)
    _record_tool_inventory_count(tool_count)
    return {
        "tool_count": tool_count,
        "tools": tool_names,
        "registered": len(_REGISTERED_TOOLS),
        "retry_after_seconds": config.TOOL_INVENTORY_RETRY_SECONDS if tool_count == 0 else None,
    }


def _call_service(tool_name: str, fn: Callable[..., dict], **kwargs) -> dict:
    """Run a service with the request context; hierarchy errors become tool payloads."""
    try:
        return fn(context=get_current_context(), **kwargs)
    except HierarchyError as exc:
        return hierarchy_error_payload(tool_name, exc)


@mcp_tool()
def memory_create(
    title: str,
    body: str = "",
    labels: Optional[list[str]] = None,
) -> dict:
    """Create a root memory."""
    return _call_service(
        "memory_create",
        memory_hierarchy.memory_create,
        title=title,
        body=body,
        labels=labels,
        embedding=precompute_embedding(title, body),
    )


@mcp_tool()
def memory_add_sub(
    parent_id: str,
    title: str,
    summary: str,
    body: str = "",
    labels: Optional[list[str]] = None,
    allow_deep: bool = False,
) -> dict:
    """Create a sub-memory and add its pointer entry (with the approved summary) to the parent."""
    return _call_service(
        "memory_add_sub",
        memory_hierarchy.memory_add_sub,
        parent_id=parent_id,
        title=title,
        summary=summary,
        body=body,
        labels=labels,
        embedding=precompute_embedding(title, body),
        allow_deep=allow_deep,
    )


@mcp_tool(annotations=DESTRUCTIVE_TOOL_ANNOTATIONS)
def memory_delete(
    memory_id: str,
    recursive: bool = False,
    reparent_children: bool = False,
) -> dict:
    return _call_service(
        "memory_delete",
        memory_hierarchy.memory_delete,
        memory_id=memory_id,
        recursive=recursive,
        reparent_children=reparent_children,
    )


@mcp_tool()
def memory_move(
    memory_id: str,
    new_parent_id: Optional[str] = None,
    to_root: bool = False,
) -> dict:
    return _call_service(
        "memory_move",
        memory_hierarchy.memory_move,
        memory_id=memory_id,
        new_parent_id=new_parent_id,
        to_root=to_root,
    )


@mcp_tool()
def memory_promote(memory_id: str) -> dict:
    """Move a memory to its grandparent (or to root)."""
    return _call_service("memory_promote", memory_hierarchy.memory_promote, memory_id=memory_id)


@mcp_tool()
def memory_touch(memory_id: str, depth: int = 0) -> dict:
    return _call_service(
        "memory_touch",
        memory_telemetry.memory_touch,
        memory_id=memory_id,
        depth=depth,
    )


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
def memory_tree(
    root_id: Optional[str] = None,
    max_depth: int = 0,
    output_format: str = "flat",
    show_stats: bool = False,
) -> dict:
    return _call_service(
        "memory_tree",
        memory_tree_service.memory_tree,
        root_id=root_id,
        max_depth=max_depth,
        output_format=output_format,
        show_stats=show_stats,
    )


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
def memory_children(parent_id: str, include_content: bool = False) -> dict:
    return _call_service(
        "memory_children",
        memory_tree_service.memory_children,
        parent_id=parent_id,
        include_content=include_content,
    )


@mcp_tool()
def memory_expand(memory_id: str, max_depth: int = 1) -> dict:
    """Read a memory with its real children expanded; every node read is recorded as an access."""
    return _call_service(
        "memory_expand",
        memory_tree_service.memory_expand,
        memory_id=memory_id,
        max_depth=max_depth,
    )


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
def memory_path(memory_id: str) -> dict:
    return _call_service("memory_path", memory_tree_service.memory_path, memory_id=memory_id)


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
def memory_hot(min_depth: int = config.HOT_DEFAULT_MIN_DEPTH, limit: int = config.HOT_DEFAULT_LIMIT) -> dict:
    """Memories read more often than their parent (promotion candidates)."""
    return _call_service(
        "memory_hot",
        memory_promotion.memory_hot,
        min_depth=min_depth,
        limit=limit,
    )


@mcp_tool()
def memory_sync(parent_id: Optional[str] = None, dry_run: bool = False) -> dict:
    """Reconcile pointer blocks with real children."""
    return _call_service(
        "memory_sync",
        memory_sync_service.memory_sync,
        parent_id=parent_id,
        dry_run=dry_run,
    )


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
def memory_cycle_audit() -> dict:
    return _call_service("memory_cycle_audit", memory_hierarchy.memory_cycle_audit)


@mcp_tool(annotations=READ_ONLY_TOOL_ANNOTATIONS)
def memory_audit_events(
    event_type: Optional[str] = None,
    limit: int = 50,
    cursor: Optional[str] = None,
) -> dict:
    """Recent create/delete/move/promote/sync events (metadata only), newest first."""
    return _call_service(
        "memory_audit_events",
        memory_hierarchy.memory_audit_events,
        event_type=event_type,
        limit=limit,
        cursor=cursor,
    )


mcp_stream_app = MCPContextMiddleware(mcp.http_app(
    path="/",
    transport="streamable-http",
    stateless_http=True,
    json_response=True,
))


class MCPRouteNormalizerASGI:
    """Pure ASGI middleware - no response buffering."""
    def __init__(self, wrapped_app):
        self.wrapped_app = wrapped_app

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and scope.get("path") == "/mcp":
            scope = dict(scope)
            scope["path"] = "/mcp/"
        await self.wrapped_app(scope, receive, send)

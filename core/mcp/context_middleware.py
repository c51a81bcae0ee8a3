"""
MCP request context middleware.

Reads the calling agent and project from request headers and exposes them to
tools for the duration of the request using contextvars (async-safe).
"""

from __future__ import annotations

import uuid

from core.context import (
    AuthContext,
    RequestContext,
    get_current_request_context,
    reset_current_request_context,
    set_current_request_context,
)
import core.config as config

AGENT_HEADER = "x-cp-agent"
PROJECT_HEADER = "x-cp-project"
REQUEST_ID_HEADER = "x-request-id"
MAX_HEADER_VALUE_LENGTH = 100


def get_current_context() -> RequestContext:
    """Get current request context, or the configured defaults if not set."""
    ctx = get_current_request_context()
    if ctx is not None:
        return ctx
    return RequestContext(
        auth=AuthContext(actor=config.DEFAULT_AGENT, actor_type="system"),
        project=config.DEFAULT_PROJECT,
    )


def _header_value(headers: dict, name: str):
    value = (headers.get(name) or "").strip()
    if not value:
        return None
    return value[:MAX_HEADER_VALUE_LENGTH]


class MCPContextMiddleware:
    """ASGI middleware that sets the agent/project context for MCP tools."""

    def __init__(self, app):
        self.app = app

    def __getattr__(self, name):
        return getattr(self.app, name)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        # ASGI headers are bytes tuples
        headers = {}
        for header_name, header_value in scope.get("headers", []):
            headers[header_name.decode("latin1").lower()] = header_value.decode("latin1")

        req_ctx = RequestContext(
            auth=AuthContext(
                actor=_header_value(headers, AGENT_HEADER) or config.DEFAULT_AGENT,
                actor_type="mcp",
            ),
            project=_header_value(headers, PROJECT_HEADER) or config.DEFAULT_PROJECT,
            request_id=_header_value(headers, REQUEST_ID_HEADER) or uuid.uuid4().hex,
            source="mcp",
        )

        token = set_current_request_context(req_ctx)
        try:
            await self.app(scope, receive, send)
        finally:
            reset_current_request_context(token)

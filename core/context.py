"""
Request-scoped context objects for core services.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
import contextvars

import core.config as config
from core.errors import ValidationIssue


@dataclass(frozen=True)
class AuthContext:
    actor: Optional[str] = None
    actor_type: str = "mcp"


@dataclass(frozen=True)
class RequestContext:
    auth: AuthContext
    project: Optional[str] = None
    request_id: Optional[str] = None
    source: Optional[str] = None


_CURRENT_REQUEST_CONTEXT: contextvars.ContextVar[Optional["RequestContext"]] = contextvars.ContextVar(
    "contextpalace_request_context",
    default=None,
)


def get_current_request_context() -> Optional["RequestContext"]:
    return _CURRENT_REQUEST_CONTEXT.get()


def set_current_request_context(context: Optional["RequestContext"]) -> contextvars.Token:
    return _CURRENT_REQUEST_CONTEXT.set(context)


def reset_current_request_context(token: contextvars.Token) -> None:
    _CURRENT_REQUEST_CONTEXT.reset(token)


def resolve_project(context: Optional["RequestContext"]) -> str:
    """Project scope for a call: explicit context first, then CP_PROJECT."""
    project = context.project if context is not None else None
    if project is None:
        return config.DEFAULT_PROJECT
    if not isinstance(project, str) or not project.strip():
        raise ValidationIssue(
            "project must be a non-empty string",
            field="project",
            error_type="required",
        )
    return project.strip()


def resolve_agent(context: Optional["RequestContext"]) -> str:
    """Agent identity recorded in access logs and audit events."""
    if context is not None and context.auth and context.auth.actor:
        return context.auth.actor
    return config.DEFAULT_AGENT


def resolve_actor_type(context: Optional["RequestContext"]) -> str:
    if context is not None and context.auth:
        return context.auth.actor_type
    return "system"


__all__ = [
    "AuthContext",
    "RequestContext",
    "get_current_request_context",
    "set_current_request_context",
    "reset_current_request_context",
    "resolve_project",
    "resolve_agent",
    "resolve_actor_type",
]

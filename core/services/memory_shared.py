"""
Shared helpers and configuration for memory hierarchy services.
"""

from __future__ import annotations

import uuid
from functools import wraps
from typing import Callable, Optional

import core.config as config
from core.errors import (
    HierarchyError,
    MemoryNotFoundError,
    ValidationIssue,
    WrongTypeError,
)
from core.models import MEMORY_TYPE, Shard
from core.validators import (
    validate_required_text as _validate_required_text,
    validate_optional_text as _validate_optional_text,
    validate_limit as _validate_limit,
    validate_range as _validate_range,
    validate_string_list as _validate_string_list,
    validate_embedding_vector as _validate_embedding_vector,
)

# =============================================================================
# Configuration
# =============================================================================

logger = config.logger

TRAVERSAL_DEPTH_CAP = config.TRAVERSAL_DEPTH_CAP
SOFT_DEPTH_LIMIT = config.SOFT_DEPTH_LIMIT
EXPAND_MAX_DEPTH = config.EXPAND_MAX_DEPTH
ACCESS_LOG_MAX = config.ACCESS_LOG_MAX
HOT_DEFAULT_MIN_DEPTH = config.HOT_DEFAULT_MIN_DEPTH
HOT_DEFAULT_LIMIT = config.HOT_DEFAULT_LIMIT

MAX_RESULT_LIMIT = config.MAX_RESULT_LIMIT
MAX_TEXT_LENGTH = config.MAX_TEXT_LENGTH
MAX_TITLE_LENGTH = config.MAX_TITLE_LENGTH
MAX_SUMMARY_LENGTH = config.MAX_SUMMARY_LENGTH
MAX_LIST_ITEMS = config.MAX_LIST_ITEMS
MAX_LIST_ITEM_LENGTH = config.MAX_LIST_ITEM_LENGTH
MAX_SHARD_ID_LENGTH = 64

CLOSED_STATUS = "closed"

MOVE_PLACEHOLDER_SUMMARY = "No summary — update manually"
SYNC_PLACEHOLDER_SUMMARY = (
    "No summary — update this memory's pointer block manually or re-add with add-sub"
)


# =============================================================================
# Helper Functions
# =============================================================================

def _tool_error_payload(tool_name: str, exc: ValidationIssue) -> dict:
    return {
        "status": "error",
        "error_type": "validation_error",
        "tool": tool_name,
        "field": exc.field,
        "message": str(exc),
    }


def _log_validation_issue(tool_name: str, exc: ValidationIssue, warn: bool = False) -> None:
    payload = {
        "tool": tool_name,
        "field": exc.field,
        "error_type": exc.error_type,
        "detail": str(exc),
    }
    if warn:
        logger.warning("tool_validation_error", extra=payload)
    else:
        logger.info("tool_validation_error", extra=payload)


def _tool_error_handler(fn: Callable[..., dict]) -> Callable[..., dict]:
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ValidationIssue as exc:
            _log_validation_issue(fn.__name__, exc, warn=False)
            return _tool_error_payload(fn.__name__, exc)
        except ValueError as exc:
            issue = ValidationIssue(str(exc), field="unknown", error_type="value_error")
            _log_validation_issue(fn.__name__, issue, warn=True)
            return _tool_error_payload(fn.__name__, issue)
    return wrapper


def service_tool(fn: Callable[..., dict]) -> Callable[..., dict]:
    return _tool_error_handler(fn)


def hierarchy_error_payload(tool_name: str, exc: HierarchyError) -> dict:
    payload = {
        "status": "error",
        "error_type": exc.error_type,
        "tool": tool_name,
        "message": str(exc),
    }
    depth = getattr(exc, "depth", None)
    if depth is not None:
        payload["depth"] = depth
    logger.info(
        "tool_hierarchy_error",
        extra={"tool": tool_name, "error_type": exc.error_type, "detail": str(exc)},
    )
    return payload


def _new_shard_id() -> str:
    return f"{config.SHARD_ID_PREFIX}-{uuid.uuid4().hex[:10]}"


def _validate_shard_id(value: str, field: str) -> str:
    _validate_required_text(value, field, MAX_SHARD_ID_LENGTH)
    return value.strip()


def _normalize_labels(labels: Optional[list[str]]) -> list[str]:
    _validate_string_list(labels, "labels", MAX_LIST_ITEMS, MAX_LIST_ITEM_LENGTH)
    seen: list[str] = []
    for label in labels or []:
        label = label.strip()
        if label and label not in seen:
            seen.append(label)
    return seen


def _get_memory(db, project: str, memory_id: str, *, lock: bool = False) -> Shard:
    """Fetch a memory node or raise MemoryNotFoundError / WrongTypeError."""
    query = db.query(Shard).filter(Shard.project == project, Shard.id == memory_id)
    if lock:
        query = query.with_for_update().populate_existing()
    shard = query.first()
    if shard is None:
        raise MemoryNotFoundError(f"memory {memory_id} not found")
    if shard.type != MEMORY_TYPE:
        raise WrongTypeError(f"{memory_id} is a {shard.type}, not a memory")
    return shard


def _lock_memories(db, project: str, memory_ids) -> dict[str, Shard]:
    """Lock several memory rows in sorted id order so concurrent movers queue up."""
    locked: dict[str, Shard] = {}
    for memory_id in sorted({mid for mid in memory_ids if mid}):
        locked[memory_id] = _get_memory(db, project, memory_id, lock=True)
    return locked


def _iso(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.isoformat()


def _serialize_memory(shard: Shard, include_content: bool = False) -> dict:
    payload = {
        "id": shard.id,
        "title": shard.title,
        "parent_id": shard.parent_id,
        "status": shard.status,
        "labels": list(shard.labels or []),
        "access_count": shard.access_count,
        "last_accessed": _iso(shard.last_accessed),
        "created_at": _iso(shard.created_at),
        "updated_at": _iso(shard.updated_at),
    }
    if include_content:
        payload["content"] = shard.content or ""
    return payload


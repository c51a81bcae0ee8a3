"""
Shared error types for core services.
"""

from typing import Optional


class ValidationIssue(ValueError):
    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.error_code = error_code
        self.data = data


class EmbeddingProviderError(RuntimeError):
    """Raised when the embedding provider is unavailable."""


class HierarchyError(Exception):
    """Base class for memory hierarchy failures."""

    error_type = "hierarchy_error"


class MemoryNotFoundError(HierarchyError):
    """Raised when a memory node (or its parent) does not exist."""

    error_type = "not_found"


class WrongTypeError(HierarchyError):
    """Raised when a shard exists but is not a memory node."""

    error_type = "wrong_type"


class MalformedBlockError(HierarchyError):
    """Raised when a pointer block is present but cannot be parsed."""

    error_type = "malformed_block"

    def __init__(self, message: str, content: str = ""):
        super().__init__(message)
        self.content = content


class CycleRejectedError(HierarchyError):
    """Raised when a move would make a node its own ancestor."""

    error_type = "cycle_rejected"


class DepthExceededError(HierarchyError):
    error_type = "depth_exceeded"

    def __init__(self, message: str, depth: Optional[int] = None):
        super().__init__(message)
        self.depth = depth


class HierarchyConflictError(HierarchyError):
    """Raised when a concurrent writer changed the rows a mutation depends on."""

    error_type = "conflict"

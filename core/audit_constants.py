"""
Canonical audit event type strings for hierarchy mutations.
"""

EVENT_MEMORY_CREATED = "memory.created"
EVENT_MEMORY_DELETED = "memory.deleted"
EVENT_MEMORY_MOVED = "memory.moved"
EVENT_MEMORY_PROMOTED = "memory.promoted"
EVENT_MEMORY_POINTERS_SYNCED = "memory.pointers_synced"

__all__ = [
    "EVENT_MEMORY_CREATED",
    "EVENT_MEMORY_DELETED",
    "EVENT_MEMORY_MOVED",
    "EVENT_MEMORY_PROMOTED",
    "EVENT_MEMORY_POINTERS_SYNCED",
]

"""
Pointer block codec.

A memory node's content may end with a machine-readable list of its believed
children, delimited by a fixed marker pair:

    Main content...

    <!-- sub-memories -->
    [
      {
        "id": "pf-1a2b3c",
        "title": "Child title",
        "summary": "One-line trigger summary"
      }
    ]
    <!-- /sub-memories -->

The marker strings and the ``id``/``title``/``summary`` field names are a
stored format: other parents already hold data in it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Iterable, Optional

from core.errors import MalformedBlockError

SUB_MEMORY_START = "<!-- sub-memories -->"
SUB_MEMORY_END = "<!-- /sub-memories -->"


@dataclass(frozen=True)
class PointerEntry:
    id: str
    title: str = ""
    summary: str = ""

    def to_dict(self) -> dict:
        return {"id": self.id, "title": self.title, "summary": self.summary}

    @classmethod
    def from_dict(cls, raw) -> "PointerEntry":
        if not isinstance(raw, dict):
            raise MalformedBlockError("pointer entry must be a JSON object")
        values = {}
        for key in ("id", "title", "summary"):
            value = raw.get(key, "")
            if value is None:
                value = ""
            if not isinstance(value, str):
                raise MalformedBlockError(f"pointer entry field '{key}' must be a string")
            values[key] = value
        if not values["id"]:
            raise MalformedBlockError("pointer entry is missing an id")
        return cls(**values)


def has_pointer_block(content: Optional[str]) -> bool:
    return bool(content) and SUB_MEMORY_START in content


def parse(content: Optional[str]) -> tuple[str, list[PointerEntry]]:
    """
    Split content into (main_content, entries).

    No start marker is not an error: the whole content comes back with no
    entries. A start marker without an end marker, or a block that is not a
    JSON array of entries, raises MalformedBlockError carrying the original
    content.
    """
    content = content or ""
    start_idx = content.find(SUB_MEMORY_START)
    if start_idx == -1:
        return content, []

    end_idx = content.find(SUB_MEMORY_END, start_idx)
    if end_idx == -1:
        raise MalformedBlockError(
            "sub-memories start marker found without end marker",
            content=content,
        )

    main_content = content[:start_idx].rstrip("\n")
    raw_block = content[start_idx + len(SUB_MEMORY_START):end_idx].strip()
    try:
        decoded = json.loads(raw_block)
    except ValueError as exc:
        raise MalformedBlockError(f"parse sub-memories JSON: {exc}", content=content) from exc

    if decoded is None:
        return main_content, []
    if not isinstance(decoded, list):
        raise MalformedBlockError("sub-memories block must be a JSON array", content=content)

    try:
        entries = [PointerEntry.from_dict(item) for item in decoded]
    except MalformedBlockError as exc:
        raise MalformedBlockError(str(exc), content=content) from exc
    return main_content, entries


def render(main_content: str, entries: Iterable[PointerEntry]) -> str:
    """Reassemble content; an empty entry list renders the main content alone."""
    entries = list(entries)
    if not entries:
        return main_content
    block = json.dumps([entry.to_dict() for entry in entries], indent=2, ensure_ascii=False)
    return f"{main_content}\n\n{SUB_MEMORY_START}\n{block}\n{SUB_MEMORY_END}\n"


def append(content: Optional[str], entry: PointerEntry) -> str:
    main_content, entries = parse(content)
    entries.append(entry)
    return render(main_content, entries)


def remove_by_id(content: Optional[str], entry_id: str) -> str:
    main_content, entries = parse(content)
    return render(main_content, [entry for entry in entries if entry.id != entry_id])


def replace_all(content: Optional[str], entries: Iterable[PointerEntry]) -> str:
    """Swap the whole block; unparsable content is kept verbatim as main content."""
    try:
        main_content, _ = parse(content)
    except MalformedBlockError:
        main_content = content or ""
    return render(main_content, entries)


def find_entry(content: Optional[str], entry_id: str) -> Optional[PointerEntry]:
    """Look up one entry without raising; malformed blocks yield None."""
    try:
        _, entries = parse(content)
    except MalformedBlockError:
        return None
    for entry in entries:
        if entry.id == entry_id:
            return entry
    return None


__all__ = [
    "SUB_MEMORY_START",
    "SUB_MEMORY_END",
    "PointerEntry",
    "has_pointer_block",
    "parse",
    "render",
    "append",
    "remove_by_id",
    "replace_all",
    "find_entry",
]

"""
Data types for the snippet shelf.
"""

import os
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional


_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def utc_now() -> str:
    """Current UTC timestamp in ISO-8601 with millisecond precision and 'Z' suffix.

    All record timestamps are UTC. This is the single source of truth for
    timestamp formatting.
    """
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime."""
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def local_date(utc_iso: str) -> str:
    """Convert a UTC ISO timestamp to a local-timezone date string (YYYY-MM-DD).

    Used for short-form display dates. Returns empty string for empty/invalid input.
    """
    if not utc_iso:
        return ""
    try:
        dt = parse_utc_timestamp(utc_iso)
        return dt.astimezone().strftime("%Y-%m-%d")
    except (ValueError, OverflowError):
        return utc_iso[:10] if len(utc_iso) >= 10 else utc_iso


def generate_id() -> str:
    """Mint a record id: epoch milliseconds plus a random base36 suffix.

    Ids sort roughly by creation time and collide only if two are minted in
    the same millisecond with the same 7-character suffix.
    """
    suffix = "".join(secrets.choice(_BASE36) for _ in range(7))
    return f"{int(time.time() * 1000)}-{suffix}"


def normalize_tags(tags: Optional[Iterable[Any]]) -> list[str]:
    """Strip, drop empties and de-duplicate tags, keeping first-seen order."""
    if not tags:
        return []
    if isinstance(tags, str):
        tags = tags.split(",")
    seen: list[str] = []
    for t in tags:
        if t is None:
            continue
        value = str(t).strip()
        if value and value not in seen:
            seen.append(value)
    return seen


# ---------------------------------------------------------------------------
# Path containment
# ---------------------------------------------------------------------------

def resolve_path(path) -> Path:
    """Absolute, symlink-resolved form of a path (need not exist)."""
    return Path(os.path.expanduser(str(path))).resolve()


def is_inside(root, target) -> bool:
    """True if target lies strictly inside root.

    Uses a relative-path check on resolved paths rather than a string
    prefix, so ``root/../x`` and a sibling ``root-other/x`` are rejected.
    """
    root_path = resolve_path(root)
    target_path = resolve_path(target)
    try:
        rel = target_path.relative_to(root_path)
    except ValueError:
        return False
    return bool(rel.parts) and ".." not in rel.parts


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------

@dataclass
class Record:
    """
    A stored snippet.

    ``source_document`` is the absolute path of the mirrored Markdown
    document, or None for a store-only record.
    """
    id: str
    name: str
    content: str = ""
    icon: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    source_document: Optional[str] = None

    @classmethod
    def new(
        cls,
        name: str,
        content: str = "",
        *,
        icon: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        source_document: Optional[str] = None,
        id: Optional[str] = None,
    ) -> "Record":
        """Create a record with a fresh id and matching timestamps."""
        now = utc_now()
        return cls(
            id=id or generate_id(),
            name=name,
            content=content,
            icon=icon or None,
            tags=normalize_tags(tags),
            created_at=now,
            updated_at=now,
            source_document=source_document,
        )

    def copy(self) -> "Record":
        """Independent copy (tags list is not shared)."""
        return Record(
            id=self.id,
            name=self.name,
            content=self.content,
            icon=self.icon,
            tags=list(self.tags),
            created_at=self.created_at,
            updated_at=self.updated_at,
            source_document=self.source_document,
        )

    def touch(self) -> None:
        self.updated_at = utc_now()

    @property
    def display_name(self) -> str:
        return f"{self.icon} {self.name}" if self.icon else self.name

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the authoritative file's key names."""
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "content": self.content,
            "tags": list(self.tags),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.icon:
            d["icon"] = self.icon
        if self.source_document:
            d["sourceDocument"] = self.source_document
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Record":
        """Deserialize one entry of the authoritative file. Unknown keys are ignored."""
        now = utc_now()
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            content=str(data.get("content") or ""),
            icon=data.get("icon") or None,
            tags=normalize_tags(data.get("tags")),
            created_at=data.get("createdAt") or now,
            updated_at=data.get("updatedAt") or data.get("createdAt") or now,
            source_document=data.get("sourceDocument") or None,
        )

    def __str__(self) -> str:
        preview = self.content[:50].replace("\n", " ")
        if len(self.content) > 50:
            preview += "..."
        return f"{self.id}: {self.display_name} - {preview}"

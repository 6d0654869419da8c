"""
Data types for clipboard history.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


# Pseudo-categories: virtual filters, never persisted as tags
DEFAULT_CATEGORY = "Clipboard History"
AI_CATEGORY = "AI"
RESERVED_CATEGORIES = (DEFAULT_CATEGORY, AI_CATEGORY)

UNKNOWN_SOURCE = "Unknown"

# Tag names entered interactively are clamped to this length
MAX_TAG_NAME_LENGTH = 20


def utc_now() -> str:
    """Current UTC timestamp with microseconds: YYYY-MM-DDTHH:MM:SS.ffffff.

    Captured items arrive faster than once a second, so ordering by
    timestamp needs sub-second precision. The fixed width keeps string
    comparison consistent with chronological order.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


def local_time(utc_iso: str) -> str:
    """Convert a stored UTC timestamp to local 'YYYY-MM-DD HH:MM' for display."""
    if not utc_iso:
        return ""
    try:
        dt = datetime.fromisoformat(utc_iso.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone().strftime("%Y-%m-%d %H:%M")
    except (ValueError, OverflowError):
        return utc_iso[:16]


def is_reserved_category(name: str) -> bool:
    """Check whether a name collides with a pseudo-category (case-insensitive)."""
    folded = name.strip().casefold()
    return any(folded == c.casefold() for c in RESERVED_CATEGORIES)


def clamp_tag_name(name: str) -> str:
    """Trim whitespace and clamp to MAX_TAG_NAME_LENGTH characters."""
    return name.strip()[:MAX_TAG_NAME_LENGTH]


class ItemKind(str, Enum):
    """Kind of captured clipboard content. Values are the stored strings."""
    TEXT = "Text"
    IMAGE = "Image"
    LINK = "Link"

    @property
    def has_text(self) -> bool:
        return self is not ItemKind.IMAGE


@dataclass(frozen=True)
class ClipItem:
    """
    A single captured clipboard entry.

    Attributes:
        id: Store-assigned identifier (0 until inserted)
        kind: Text, Image or Link
        content: Text content (Text and Link items; empty for images)
        image_data: Raw image payload (Image items only)
        timestamp: Capture time, UTC (see utc_now)
        source: Identifier of the foreground application at capture time
        tags: Tag names attached to this item
    """
    kind: ItemKind
    content: str = ""
    image_data: Optional[bytes] = None
    timestamp: str = field(default_factory=utc_now)
    source: str = UNKNOWN_SOURCE
    tags: frozenset[str] = frozenset()
    id: int = 0

    def __post_init__(self):
        if not isinstance(self.kind, ItemKind):
            object.__setattr__(self, "kind", ItemKind(self.kind))
        if not isinstance(self.tags, frozenset):
            object.__setattr__(self, "tags", frozenset(self.tags))

    @property
    def is_text(self) -> bool:
        return self.kind is ItemKind.TEXT

    def with_id(self, id: int) -> "ClipItem":
        return replace(self, id=id)

    def with_tags(self, tags) -> "ClipItem":
        return replace(self, tags=frozenset(tags))

    def preview(self, width: int = 80) -> str:
        """Single-line preview for listings."""
        if self.kind is ItemKind.IMAGE:
            size = len(self.image_data or b"")
            return f"[image, {size} bytes]"
        text = " ".join(self.content.split())
        if len(text) > width:
            return text[:width - 3] + "..."
        return text


@dataclass(frozen=True)
class ScoredItem:
    """An item paired with its cosine similarity to a query."""
    item: ClipItem
    score: float

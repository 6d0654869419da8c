"""
clipkeep: clipboard history with lexical and semantic search.

Captures clipboard text and images into a local SQLite store, tags them,
and finds them again by substring terms or by embedding similarity using
a local embedding server, Google or OpenAI.
"""

from .api import ClipKeeper
from .backfill import BackfillJob, BackfillResult, BackfillState
from .capture import CaptureLoop, Clipboard
from .config import EmbeddingSettings, SettingsManager, StoreConfig
from .embedding_client import EmbeddingClient
from .errors import EmbeddingError, StoreError
from .search import SearchEngine
from .session import Session, SessionState
from .store import ItemStore
from .types import AI_CATEGORY, DEFAULT_CATEGORY, ClipItem, ItemKind, ScoredItem

__all__ = [
    "ClipKeeper",
    "BackfillJob",
    "BackfillResult",
    "BackfillState",
    "CaptureLoop",
    "Clipboard",
    "EmbeddingSettings",
    "SettingsManager",
    "StoreConfig",
    "EmbeddingClient",
    "EmbeddingError",
    "StoreError",
    "SearchEngine",
    "Session",
    "SessionState",
    "ItemStore",
    "AI_CATEGORY",
    "DEFAULT_CATEGORY",
    "ClipItem",
    "ItemKind",
    "ScoredItem",
]

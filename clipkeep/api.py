"""
Core API for clipkeep.

ClipKeeper owns the process-wide services (config, settings, store,
embedding client, search engine) and hands them to the components that
need them. Nothing looks services up globally.
"""

import logging
from pathlib import Path
from typing import Callable, Optional

from .backfill import BackfillJob, ProgressCallback
from .capture import CaptureLoop, Clipboard, PyperclipClipboard
from .config import SettingsManager, StoreConfig, get_config_dir, load_or_create_config
from .embedding_client import EmbeddingClient
from .search import SearchEngine, filter_items
from .session import Session
from .store import ItemStore
from .types import DEFAULT_CATEGORY, ClipItem, ItemKind, ScoredItem

logger = logging.getLogger(__name__)


class ClipKeeper:
    """
    Clipboard history with lexical and semantic search.

    Example:
        with ClipKeeper() as ck:
            ck.capture_loop().start()
            results = ck.semantic_search("that api key docs link")
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        clipboard: Optional[Clipboard] = None,
        client: Optional[EmbeddingClient] = None,
        persist_settings: bool = True,
        ops_log: bool = True,
    ) -> None:
        """
        Open (or create) a store.

        Args:
            store_path: Store directory. Defaults to CLIPKEEP_STORE_PATH or ~/.clipkeep
            config: Pre-loaded config (skips filesystem discovery)
            clipboard: Clipboard capability (default: system clipboard via pyperclip)
            client: Embedding client (default: built from the settings)
            persist_settings: Write settings changes back to the config file
            ops_log: Attach the rotating operations log
        """
        if config is not None:
            self._config = config
        else:
            path = Path(store_path).expanduser().resolve() if store_path else get_config_dir()
            self._config = load_or_create_config(path)
        self._store_path = self._config.path

        self._ops_log_handler = None
        if ops_log:
            from .logging_config import configure_ops_log
            self._ops_log_handler = configure_ops_log(self._store_path)

        self.settings = SettingsManager(self._config, persist=persist_settings)
        self.store = ItemStore(
            self._config.database_path,
            settings=self.settings,
            max_items=self._config.max_items,
        )
        self.client = client or EmbeddingClient(self.settings)
        self.search = SearchEngine(self.store, self.client)
        self._clipboard = clipboard
        self._closed = False

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def store_path(self) -> Path:
        return self._store_path

    @property
    def clipboard(self) -> Clipboard:
        if self._clipboard is None:
            self._clipboard = PyperclipClipboard()
        return self._clipboard

    # -------------------------------------------------------------------------
    # Components
    # -------------------------------------------------------------------------

    def capture_loop(self, *, on_captured: Optional[Callable[[ClipItem], None]] = None) -> CaptureLoop:
        return CaptureLoop(
            self.store, self.client, self.clipboard,
            interval=self._config.poll_interval,
            on_captured=on_captured,
        )

    def backfill_job(self, *, on_progress: Optional[ProgressCallback] = None) -> BackfillJob:
        return BackfillJob(self.store, self.client, on_progress=on_progress)

    def session(self, **kwargs) -> Session:
        """A new (unstarted) session over this store."""
        kwargs.setdefault("page_size", self._config.page_size)
        return Session(self.store, self.search, self.settings, **kwargs)

    # -------------------------------------------------------------------------
    # Direct operations
    # -------------------------------------------------------------------------

    def recent(self, limit: Optional[int] = None, offset: int = 0) -> list[ClipItem]:
        """Newest items first, one page by default."""
        return self.store.list_items(limit or self._config.page_size, offset)

    def find(self, query: str, category: str = DEFAULT_CATEGORY, *, search_all: bool = True) -> list[ClipItem]:
        """Lexical search over the whole store, or over the newest page."""
        if search_all:
            return self.search.lexical_all(query, category)
        return filter_items(self.recent(), query, category)

    def semantic_search(self, query: str) -> list[ScoredItem]:
        """Similarity search with the active provider. Raises on failure."""
        return self.search.semantic(query)

    def copy_items(self, item_ids: list[int]) -> int:
        """
        Write items back to the clipboard.

        A single image item is written as an image; otherwise the text of
        the text and link items is joined with newlines.

        Returns:
            Number of items written
        """
        items = [item for item in (self.store.get_item(i) for i in item_ids) if item is not None]
        if not items:
            return 0
        if len(items) == 1 and items[0].kind is ItemKind.IMAGE:
            self.clipboard.write_image(items[0].image_data or b"")
            return 1
        texts = [item.content for item in items if item.kind.has_text]
        if not texts:
            return 0
        self.clipboard.write_text("\n".join(texts))
        logger.info("Copied %d items to the clipboard", len(texts))
        return len(texts)

    def test_connection(self) -> int:
        return self.client.test_connection()

    def clear_embeddings(self) -> int:
        """Remove every vector of the active provider."""
        return self.store.clear_embeddings()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the store and detach the operations log."""
        if self._closed:
            return
        self._closed = True
        self.store.close()
        if self._ops_log_handler is not None:
            from .logging_config import remove_ops_log
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

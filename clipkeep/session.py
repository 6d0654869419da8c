"""
Session state for an interactive history view.

A Session owns the loaded window of items, the filtered view and the
search controls. Every state change runs on one loop thread, fed by a
queue; store and network work runs on a worker pool and posts its result
back to that queue. Results of superseded requests are dropped
(last request wins).

Search text changes are debounced; category and search-all changes apply
immediately.
"""

import logging
import queue
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from typing import Callable, Optional

from .config import DEFAULT_PAGE_SIZE, EmbeddingSettings, SettingsManager
from .search import PageCursor, SearchEngine, filter_items, is_semantic_query
from .store import ItemStore
from .types import (
    DEFAULT_CATEGORY,
    RESERVED_CATEGORIES,
    ClipItem,
    clamp_tag_name,
    is_reserved_category,
)

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 0.3


@dataclass(frozen=True)
class SessionState:
    """Immutable snapshot of a session, handed to listeners."""
    items: tuple[ClipItem, ...] = ()
    filtered_items: tuple[ClipItem, ...] = ()
    search_text: str = ""
    category: str = DEFAULT_CATEGORY
    search_all: bool = False
    is_loading: bool = False
    has_more: bool = True
    is_semantic: bool = False
    is_searching: bool = False
    search_error: Optional[str] = None
    last_error: Optional[str] = None
    provider: str = "local"
    categories: tuple[str, ...] = RESERVED_CATEGORIES
    scores: dict[int, float] = field(default_factory=dict)


StateListener = Callable[[SessionState], None]


def normalize_tag_name(name: str) -> str:
    """Trim and clamp a user-entered tag name; reject empty or reserved names."""
    clamped = clamp_tag_name(name)
    if not clamped:
        raise ValueError("Tag name must not be empty")
    if is_reserved_category(clamped):
        raise ValueError(f"'{clamped}' is a reserved category")
    return clamped


class Session:
    """
    Serialized owner of view state.

    Public methods only enqueue work and return at once. Call wait_idle()
    to block until everything queued so far, including debounce timers and
    background tasks, has been applied.
    """

    def __init__(
        self,
        store: ItemStore,
        engine: SearchEngine,
        settings: SettingsManager,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        executor: Optional[Executor] = None,
    ):
        self._store = store
        self._engine = engine
        self._settings = settings
        self._debounce_seconds = debounce_seconds
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="clipkeep-session"
        )

        # State, mutated only on the loop thread while holding _lock
        self._lock = threading.RLock()
        self._items: list[ClipItem] = []
        self._filtered: list[ClipItem] = []
        self._scores: dict[int, float] = {}
        self._search_text = ""
        self._category = DEFAULT_CATEGORY
        self._search_all = False
        self._is_loading = False
        self._is_semantic = False
        self._is_searching = False
        self._search_error: Optional[str] = None
        self._last_error: Optional[str] = None
        self._provider = settings.provider
        self._categories: list[str] = list(RESERVED_CATEGORIES)
        self._cursor = PageCursor(page_size)

        # Generations: results tagged with an older value are discarded
        self._page_gen = 0
        self._query_gen = 0
        self._debounce_token = 0

        self._queue: queue.Queue = queue.Queue()
        self._pending = 0
        self._idle = threading.Condition()
        self._listeners: list[StateListener] = []
        self._thread: Optional[threading.Thread] = None
        self._closed = False
        self._post_lock = threading.Lock()
        self._unsubscribe: Optional[Callable[[], None]] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> "Session":
        """Start the loop, follow settings changes and load the first page."""
        if self._thread is not None:
            return self
        self._thread = threading.Thread(target=self._loop, name="clipkeep-session", daemon=True)
        self._thread.start()
        self._unsubscribe = self._settings.subscribe(
            lambda settings: self._post(self._on_settings, settings)
        )
        self.reload()
        return self

    def close(self) -> None:
        if self._closed:
            return
        if self._unsubscribe is not None:
            self._unsubscribe()
        with self._post_lock:
            self._closed = True
            self._queue.put(None)
        if self._thread is not None:
            self._thread.join()
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no queued, scheduled or background work remains."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout)

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def snapshot(self) -> SessionState:
        with self._lock:
            return SessionState(
                items=tuple(self._items),
                filtered_items=tuple(self._filtered),
                search_text=self._search_text,
                category=self._category,
                search_all=self._search_all,
                is_loading=self._is_loading,
                has_more=self._cursor.has_more,
                is_semantic=self._is_semantic,
                is_searching=self._is_searching,
                search_error=self._search_error,
                last_error=self._last_error,
                provider=self._provider,
                categories=tuple(self._categories),
                scores=dict(self._scores),
            )

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call listener with a snapshot after every state change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    def _begin(self) -> None:
        with self._idle:
            self._pending += 1

    def _end(self) -> None:
        with self._idle:
            self._pending -= 1
            if self._pending == 0:
                self._idle.notify_all()

    def _post(self, fn: Callable, *args) -> None:
        """Queue a state mutation for the loop thread."""
        with self._post_lock:
            if self._closed:
                return
            self._begin()
            self._queue.put((fn, args))

    def _loop(self) -> None:
        while True:
            entry = self._queue.get()
            if entry is None:
                break
            fn, args = entry
            try:
                with self._lock:
                    fn(*args)
            except Exception as e:
                logger.warning("Session update %s failed: %s", getattr(fn, "__name__", fn), e)
                with self._lock:
                    self._last_error = str(e)
            finally:
                self._notify()
                self._end()

    def _notify(self) -> None:
        if not self._listeners:
            return
        state = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.warning("Session listener failed: %s", e)

    def _background(self, work: Callable[[], object], apply: Callable) -> None:
        """Run work on the pool, then apply(result, error) on the loop thread."""
        self._begin()

        def task():
            try:
                result, error = work(), None
            except Exception as e:
                result, error = None, e
            self._post(apply, result, error)
            self._end()

        self._executor.submit(task)

    # -------------------------------------------------------------------------
    # Paging
    # -------------------------------------------------------------------------

    def load_more(self) -> None:
        """Request the next page of history."""
        self._post(self._load_more)

    def reload(self) -> None:
        """Discard the loaded window and start again from the newest item."""
        self._post(self._reload)

    def _reload(self) -> None:
        self._page_gen += 1
        self._items = []
        self._cursor.reset()
        self._is_loading = False
        if not self._paging_suspended:
            self._request_page()
        self._load_categories()
        if self._search_all and not self._is_semantic:
            self._refresh_query()

    @property
    def _paging_suspended(self) -> bool:
        return self._search_all or self._is_semantic

    def _load_more(self) -> None:
        if self._paging_suspended:
            return
        self._request_page()

    def _request_page(self) -> None:
        if self._is_loading or not self._cursor.has_more:
            return
        self._is_loading = True
        limit, offset = self._cursor.page_size, self._cursor.offset
        self._background(
            lambda: self._store.list_items(limit, offset),
            partial(self._page_loaded, self._page_gen),
        )

    def _page_loaded(self, gen: int, items: Optional[list[ClipItem]], error: Optional[Exception]) -> None:
        if gen != self._page_gen:
            return
        self._is_loading = False
        if error is not None:
            self._last_error = str(error)
            return
        known = {item.id for item in self._items}
        self._items.extend(item for item in items if item.id not in known)
        self._cursor.advance(len(items))
        if not self._search_all and not self._is_semantic:
            self._filtered = filter_items(self._items, self._search_text, self._category)

    # -------------------------------------------------------------------------
    # Search controls
    # -------------------------------------------------------------------------

    def set_search_text(self, text: str) -> None:
        """Update the query; recomputation waits for a quiet period."""
        self._post(self._set_search_text, text)

    def set_category(self, category: str) -> None:
        self._post(self._set_category, category)

    def set_search_all(self, enabled: bool) -> None:
        self._post(self._set_search_all, enabled)

    def _set_search_text(self, text: str) -> None:
        self._search_text = text
        self._debounce_token += 1
        token = self._debounce_token
        self._begin()

        def fire():
            self._post(self._debounced, token)
            self._end()

        timer = threading.Timer(self._debounce_seconds, fire)
        timer.daemon = True
        timer.start()

    def _debounced(self, token: int) -> None:
        if token != self._debounce_token:
            return
        self._refresh_query()

    def _set_category(self, category: str) -> None:
        self._category = category
        self._refresh_query()

    def _set_search_all(self, enabled: bool) -> None:
        self._search_all = enabled
        self._refresh_query()

    def _refresh_query(self) -> None:
        self._query_gen += 1
        if is_semantic_query(self._search_text, self._category):
            self._start_semantic()
        else:
            self._refresh_lexical()

    def _refresh_lexical(self) -> None:
        self._is_semantic = False
        self._is_searching = False
        self._search_error = None
        self._scores = {}
        if not self._search_all:
            self._filtered = filter_items(self._items, self._search_text, self._category)
            if not self._items:
                # Window was dropped by a reload while paging was suspended
                self._request_page()
            return
        self._is_searching = True
        text, category = self._search_text, self._category
        self._background(
            lambda: self._engine.lexical_all(text, category),
            partial(self._lexical_done, self._query_gen),
        )

    def _lexical_done(self, gen: int, items: Optional[list[ClipItem]], error: Optional[Exception]) -> None:
        if gen != self._query_gen:
            return
        self._is_searching = False
        if error is not None:
            self._last_error = str(error)
            self._filtered = []
            return
        self._filtered = list(items)

    def _start_semantic(self) -> None:
        self._is_semantic = True
        self._is_searching = True
        self._search_error = None
        query = self._search_text
        self._background(
            lambda: self._engine.semantic(query),
            partial(self._semantic_done, self._query_gen),
        )

    def _semantic_done(self, gen: int, results, error: Optional[Exception]) -> None:
        if gen != self._query_gen:
            return
        self._is_searching = False
        if error is not None:
            logger.warning("Semantic search failed: %s", error)
            self._search_error = str(error)
            self._filtered = []
            self._scores = {}
            return
        self._filtered = [r.item for r in results]
        self._scores = {r.item.id: r.score for r in results}

    def _on_settings(self, settings: EmbeddingSettings) -> None:
        if settings.provider == self._provider:
            return
        logger.info("Session provider changed: %s -> %s", self._provider, settings.provider)
        self._provider = settings.provider
        if self._is_semantic:
            self._query_gen += 1
            self._refresh_lexical()

    # -------------------------------------------------------------------------
    # Categories and tags
    # -------------------------------------------------------------------------

    def _load_categories(self) -> None:
        self._background(self._store.list_tags, self._categories_loaded)

    def _categories_loaded(self, tags: Optional[list[str]], error: Optional[Exception]) -> None:
        if error is not None:
            self._last_error = str(error)
            return
        self._categories = list(RESERVED_CATEGORIES) + [
            t for t in tags if not is_reserved_category(t)
        ]

    def _replace_tags(self, item_id: int, change: Callable[[frozenset], set]) -> None:
        def update(items: list[ClipItem]) -> list[ClipItem]:
            return [
                item.with_tags(change(item.tags)) if item.id == item_id else item
                for item in items
            ]
        self._items = update(self._items)
        self._filtered = update(self._filtered)

    def _map_all_tags(self, change: Callable[[frozenset], set]) -> None:
        self._items = [item.with_tags(change(item.tags)) for item in self._items]
        self._filtered = [item.with_tags(change(item.tags)) for item in self._filtered]

    def add_category(self, name: str) -> str:
        """Create an empty category. Returns the stored (clamped) name."""
        name = normalize_tag_name(name)
        self._post(lambda: self._background(
            partial(self._store.add_tag, name), self._tags_changed,
        ))
        return name

    def add_tag(self, item_id: int, name: str) -> str:
        """Tag an item. Returns the stored (clamped) name."""
        name = normalize_tag_name(name)

        def work():
            if not self._store.add_tag_to_item(item_id, name):
                raise RuntimeError(f"Could not tag item {item_id} with '{name}'")

        def apply(_, error):
            if error is None:
                self._replace_tags(item_id, lambda tags: tags | {name})
            self._tags_changed(None, error)

        self._post(lambda: self._background(work, apply))
        return name

    def remove_tag(self, item_id: int, name: str) -> None:
        """Remove one tag from one item."""
        def apply(removed, error):
            if error is None and removed:
                self._replace_tags(item_id, lambda tags: tags - {name})
            self._tags_changed(None, error)

        self._post(lambda: self._background(
            lambda: self._store.remove_tag_from_item(item_id, name), apply,
        ))

    def rename_category(self, old: str, new: str) -> str:
        """Rename a tag everywhere. Failures land in last_error."""
        if is_reserved_category(old):
            raise ValueError(f"'{old}' is a reserved category")
        new = normalize_tag_name(new)

        def apply(_, error):
            if error is None:
                self._map_all_tags(lambda tags: (tags - {old}) | {new} if old in tags else tags)
                if self._category == old:
                    self._category = new
            self._tags_changed(None, error)

        self._post(lambda: self._background(
            partial(self._store.rename_tag, old, new), apply,
        ))
        return new

    def delete_category(self, name: str) -> None:
        """Delete a tag and unlink it from every item."""
        if is_reserved_category(name):
            raise ValueError(f"'{name}' is a reserved category")

        def apply(removed, error):
            if error is None and removed:
                self._map_all_tags(lambda tags: tags - {name})
                if self._category == name:
                    self._category = DEFAULT_CATEGORY
            self._tags_changed(None, error)

        self._post(lambda: self._background(
            partial(self._store.remove_tag, name), apply,
        ))

    def _tags_changed(self, _result, error: Optional[Exception]) -> None:
        if error is not None:
            logger.warning("Tag update failed: %s", error)
            self._last_error = str(error)
            return
        self._last_error = None
        self._load_categories()
        if not self._is_semantic:
            self._refresh_query()

    # -------------------------------------------------------------------------
    # Items
    # -------------------------------------------------------------------------

    def delete_item(self, item_id: int) -> None:
        def apply(deleted, error):
            if error is not None:
                self._last_error = str(error)
                return
            if not deleted:
                self._last_error = f"Could not delete item {item_id}"
                return
            self._items = [i for i in self._items if i.id != item_id]
            self._filtered = [i for i in self._filtered if i.id != item_id]
            self._scores.pop(item_id, None)

        self._post(lambda: self._background(
            partial(self._store.delete_item, item_id), apply,
        ))

    def clear_error(self) -> None:
        self._post(self._clear_error)

    def _clear_error(self) -> None:
        self._last_error = None
        self._search_error = None



"""
Clipboard history store using SQLite.

Tables:
- items: one row per captured item
- tags / item_tags: user labels, many-to-many with items
- {provider}_embeddings: one vector table per embedding provider

Each provider's vectors are an independent set; switching providers
never touches the other tables. Deleting an item removes its tag links
and its vectors in every provider table.

Failure policy: read paths log storage errors and return empty results
so the history stays usable; write paths whose outcome callers depend on
(embedding save, tag rename, similarity ranking) raise StoreError.
"""

import heapq
import logging
import math
import sqlite3
import struct
import threading
from pathlib import Path
from typing import Iterable, Optional

from .config import DEFAULT_MAX_ITEMS, PROVIDER_NAMES, SettingsManager, validate_provider
from .errors import StoreError, TagExistsError, TagNotFoundError
from .types import AI_CATEGORY, DEFAULT_CATEGORY, ClipItem, ItemKind

logger = logging.getLogger(__name__)

_PASS_ALL_CATEGORIES = {DEFAULT_CATEGORY.casefold(), AI_CATEGORY.casefold()}


# -----------------------------------------------------------------------------
# Vector helpers
# -----------------------------------------------------------------------------

def pack_vector(vector: Iterable[float]) -> bytes:
    """Serialize a vector as little-endian float32 (4 bytes per dimension)."""
    values = list(vector)
    return struct.pack(f"<{len(values)}f", *values)


def unpack_vector(blob: bytes) -> list[float]:
    """Inverse of pack_vector."""
    count = len(blob) // 4
    return list(struct.unpack(f"<{count}f", blob[:count * 4]))


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity; 0.0 for mismatched lengths or zero vectors."""
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def _casefold(value: Optional[str]) -> Optional[str]:
    return value.casefold() if value is not None else None


def _tag_key(value: Optional[str]) -> Optional[str]:
    return value.strip().casefold() if value is not None else None


def embedding_table(provider: str) -> str:
    """Table holding a provider's vectors, e.g. openai_embeddings."""
    return f"{validate_provider(provider)}_embeddings"


# -----------------------------------------------------------------------------
# Embedding store
# -----------------------------------------------------------------------------

class EmbeddingStore:
    """
    Vectors for a single provider, keyed by item id.

    Shares the connection and lock of the owning ItemStore. At most one
    vector per item; saving again overwrites.
    """

    def __init__(self, conn: sqlite3.Connection, lock: threading.RLock, provider: str):
        self._conn = conn
        self._lock = lock
        self.provider = validate_provider(provider)
        self.table = embedding_table(provider)

    def ensure_table(self) -> None:
        """Create the provider's table if absent."""
        with self._lock:
            self._conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    id INTEGER PRIMARY KEY,
                    vector BLOB NOT NULL,
                    FOREIGN KEY (id) REFERENCES items(id) ON DELETE CASCADE
                )
            """)

    def save(self, item_id: int, vector: list[float]) -> None:
        """Insert or replace the vector for an item."""
        with self._lock:
            self.ensure_table()
            with self._conn:
                self._conn.execute(
                    f"INSERT OR REPLACE INTO {self.table} (id, vector) VALUES (?, ?)",
                    (item_id, pack_vector(vector)),
                )

    def get(self, item_id: int) -> Optional[list[float]]:
        with self._lock:
            self.ensure_table()
            row = self._conn.execute(
                f"SELECT vector FROM {self.table} WHERE id = ?", (item_id,)
            ).fetchone()
        return unpack_vector(row["vector"]) if row else None

    def delete(self, item_ids: list[int]) -> None:
        """Delete vectors for items. Caller owns the transaction."""
        if not item_ids:
            return
        placeholders = ",".join("?" * len(item_ids))
        self._conn.execute(
            f"DELETE FROM {self.table} WHERE id IN ({placeholders})", item_ids
        )

    def clear(self) -> int:
        with self._lock:
            self.ensure_table()
            with self._conn:
                cursor = self._conn.execute(f"DELETE FROM {self.table}")
        return cursor.rowcount

    def count(self) -> int:
        with self._lock:
            self.ensure_table()
            return self._conn.execute(f"SELECT COUNT(*) FROM {self.table}").fetchone()[0]

    def rank(self, query: list[float], k: int) -> list[tuple[int, float]]:
        """Top-k (item id, similarity) by cosine similarity, descending.

        Full scan of the table; there is no vector index.
        """
        with self._lock:
            self.ensure_table()
            rows = self._conn.execute(f"SELECT id, vector FROM {self.table}").fetchall()
        scored = (
            (row["id"], cosine_similarity(query, unpack_vector(row["vector"])))
            for row in rows
        )
        return heapq.nlargest(k, scored, key=lambda pair: pair[1])


# -----------------------------------------------------------------------------
# Item store
# -----------------------------------------------------------------------------

class ItemStore:
    """
    SQLite-backed store for clipboard items, tags and embeddings.

    Thread-safe: one connection shared behind a re-entrant lock. Each
    write is its own transaction; there is no cross-operation locking.
    """

    def __init__(
        self,
        db_path: Path | str,
        *,
        settings: Optional[SettingsManager] = None,
        max_items: int = DEFAULT_MAX_ITEMS,
    ):
        """
        Args:
            db_path: Path to SQLite database file (":memory:" for tests)
            settings: Settings manager; selects the active provider's table
            max_items: Capacity; oldest items are evicted beyond it
        """
        self._db_path = db_path
        self._settings = settings
        self.max_items = max_items
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        in_memory = str(self._db_path) == ":memory:"
        if not in_memory:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # Unicode case folding; SQLite's lower() and LIKE only fold ASCII
        self._conn.create_function("casefold", 1, _casefold, deterministic=True)
        self._conn.create_function("tag_key", 1, _tag_key, deterministic=True)
        self._conn.execute("PRAGMA foreign_keys=ON")
        if not in_memory:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                type TEXT NOT NULL,
                text_content TEXT,
                image_data BLOB,
                timestamp TEXT NOT NULL,
                source TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_items_timestamp
            ON items(timestamp)
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS tags (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS item_tags (
                item_id INTEGER NOT NULL,
                tag_id INTEGER NOT NULL,
                PRIMARY KEY (item_id, tag_id),
                FOREIGN KEY (item_id) REFERENCES items(id) ON DELETE CASCADE,
                FOREIGN KEY (tag_id) REFERENCES tags(id) ON DELETE CASCADE
            )
        """)
        for provider in PROVIDER_NAMES:
            self.embeddings(provider).ensure_table()
        self._conn.commit()

    @property
    def active_provider(self) -> str:
        """Provider whose table embedding operations use by default."""
        return self._settings.provider if self._settings is not None else "local"

    def embeddings(self, provider: Optional[str] = None) -> EmbeddingStore:
        """Vector table for a provider (default: the active one)."""
        return EmbeddingStore(self._conn, self._lock, provider or self.active_provider)

    # -------------------------------------------------------------------------
    # Row conversion
    # -------------------------------------------------------------------------

    def _tags_for(self, item_ids: list[int]) -> dict[int, set[str]]:
        result: dict[int, set[str]] = {i: set() for i in item_ids}
        if not item_ids:
            return result
        placeholders = ",".join("?" * len(item_ids))
        rows = self._conn.execute(f"""
            SELECT it.item_id, t.name FROM item_tags it
            JOIN tags t ON t.id = it.tag_id
            WHERE it.item_id IN ({placeholders})
        """, item_ids).fetchall()
        for row in rows:
            result[row["item_id"]].add(row["name"])
        return result

    def _rows_to_items(self, rows: list[sqlite3.Row]) -> list[ClipItem]:
        tags = self._tags_for([row["id"] for row in rows])
        return [
            ClipItem(
                id=row["id"],
                kind=ItemKind(row["type"]),
                content=row["text_content"] or "",
                image_data=row["image_data"],
                timestamp=row["timestamp"],
                source=row["source"],
                tags=frozenset(tags[row["id"]]),
            )
            for row in rows
        ]

    # -------------------------------------------------------------------------
    # Items
    # -------------------------------------------------------------------------

    def insert_item(self, item: ClipItem) -> int:
        """
        Store a new item with its tags, then enforce the capacity limit.

        Returns:
            The assigned id, or 0 if the insert failed (the failure is logged)
        """
        text = item.content if item.kind.has_text else None
        image = item.image_data if item.kind is ItemKind.IMAGE else None
        with self._lock:
            try:
                with self._conn:
                    cursor = self._conn.execute("""
                        INSERT INTO items (type, text_content, image_data, timestamp, source)
                        VALUES (?, ?, ?, ?, ?)
                    """, (item.kind.value, text, image, item.timestamp, item.source))
                    item_id = cursor.lastrowid
                    for tag in item.tags:
                        self._link_tag(item_id, tag)
                    evicted = self._enforce_capacity()
            except sqlite3.Error as e:
                logger.warning("Failed to add clipboard item: %s", e)
                return 0
        if evicted:
            logger.info("Evicted %d oldest items (limit %d)", evicted, self.max_items)
        return item_id

    def _enforce_capacity(self) -> int:
        """Delete the oldest items beyond max_items. Caller owns the transaction."""
        count = self._conn.execute("SELECT COUNT(*) FROM items").fetchone()[0]
        excess = count - self.max_items
        if excess <= 0:
            return 0
        rows = self._conn.execute("""
            SELECT id FROM items
            ORDER BY timestamp ASC, id ASC
            LIMIT ?
        """, (excess,)).fetchall()
        return self._delete_rows([row["id"] for row in rows])

    def _delete_rows(self, item_ids: list[int]) -> int:
        """Remove items with their links and vectors. Caller owns the transaction."""
        if not item_ids:
            return 0
        placeholders = ",".join("?" * len(item_ids))
        self._conn.execute(
            f"DELETE FROM item_tags WHERE item_id IN ({placeholders})", item_ids
        )
        for provider in PROVIDER_NAMES:
            self.embeddings(provider).delete(item_ids)
        cursor = self._conn.execute(
            f"DELETE FROM items WHERE id IN ({placeholders})", item_ids
        )
        return cursor.rowcount

    def delete_item(self, item_id: int) -> bool:
        """Delete an item, its tag links and its vectors atomically."""
        with self._lock:
            try:
                with self._conn:
                    deleted = self._delete_rows([item_id])
            except sqlite3.Error as e:
                logger.warning("Failed to delete clipboard item %d: %s", item_id, e)
                return False
        return deleted > 0

    def get_item(self, item_id: int) -> Optional[ClipItem]:
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT * FROM items WHERE id = ?", (item_id,)
                ).fetchone()
                return self._rows_to_items([row])[0] if row else None
            except sqlite3.Error as e:
                logger.warning("Failed to get clipboard item %d: %s", item_id, e)
                return None

    def list_items(self, limit: int = 1000, offset: int = 0) -> list[ClipItem]:
        """Items newest first, for forward paging."""
        with self._lock:
            try:
                rows = self._conn.execute("""
                    SELECT * FROM items
                    ORDER BY timestamp DESC, id DESC
                    LIMIT ? OFFSET ?
                """, (limit, offset)).fetchall()
                return self._rows_to_items(rows)
            except sqlite3.Error as e:
                logger.warning("Failed to fetch clipboard items: %s", e)
                return []

    def search_items(self, text: str, category: str = DEFAULT_CATEGORY) -> list[ClipItem]:
        """
        Search the whole store, newest first.

        Args:
            text: Whitespace-separated terms; every term must occur in the
                text content (case-insensitive substring)
            category: Tag name to restrict to; pseudo-categories don't filter
        """
        where: list[str] = []
        params: list = []
        folded = category.strip().casefold()
        if folded not in _PASS_ALL_CATEGORIES:
            where.append("""EXISTS (
                SELECT 1 FROM item_tags it JOIN tags t ON t.id = it.tag_id
                WHERE it.item_id = items.id AND tag_key(t.name) = ?
            )""")
            params.append(folded)
        for term in text.split():
            where.append("instr(casefold(text_content), ?) > 0")
            params.append(term.casefold())
        where_clause = f"WHERE {' AND '.join(where)}" if where else ""
        with self._lock:
            try:
                rows = self._conn.execute(f"""
                    SELECT * FROM items
                    {where_clause}
                    ORDER BY timestamp DESC, id DESC
                """, params).fetchall()
                return self._rows_to_items(rows)
            except sqlite3.Error as e:
                logger.warning("Failed to search clipboard items: %s", e)
                return []

    def count(self) -> int:
        with self._lock:
            try:
                return self._conn.execute("SELECT COUNT(*) FROM items").fetchone()[0]
            except sqlite3.Error as e:
                logger.warning("Failed to count clipboard items: %s", e)
                return 0

    # -------------------------------------------------------------------------
    # Tags
    # -------------------------------------------------------------------------

    def _tag_id(self, name: str) -> Optional[int]:
        row = self._conn.execute("SELECT id FROM tags WHERE name = ?", (name,)).fetchone()
        return row["id"] if row else None

    def _link_tag(self, item_id: int, name: str) -> None:
        self._conn.execute("INSERT OR IGNORE INTO tags (name) VALUES (?)", (name,))
        self._conn.execute(
            "INSERT OR IGNORE INTO item_tags (item_id, tag_id) VALUES (?, ?)",
            (item_id, self._tag_id(name)),
        )

    def add_tag(self, name: str) -> None:
        """Create a tag (no-op if it exists)."""
        if not name:
            raise ValueError("Tag name must not be empty")
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute("INSERT OR IGNORE INTO tags (name) VALUES (?)", (name,))
            except sqlite3.Error as e:
                raise StoreError(f"Failed to add tag '{name}': {e}") from e

    def add_tag_to_item(self, item_id: int, name: str) -> bool:
        """Attach a tag to an item, creating the tag if needed."""
        if not name:
            raise ValueError("Tag name must not be empty")
        with self._lock:
            try:
                with self._conn:
                    self._link_tag(item_id, name)
                return True
            except sqlite3.Error as e:
                logger.warning("Failed to add tag '%s' to item %d: %s", name, item_id, e)
                return False

    def remove_tag_from_item(self, item_id: int, name: str) -> bool:
        with self._lock:
            try:
                with self._conn:
                    cursor = self._conn.execute("""
                        DELETE FROM item_tags
                        WHERE item_id = ? AND tag_id = (SELECT id FROM tags WHERE name = ?)
                    """, (item_id, name))
                return cursor.rowcount > 0
            except sqlite3.Error as e:
                logger.warning("Failed to remove tag '%s' from item %d: %s", name, item_id, e)
                return False

    def remove_tag(self, name: str) -> bool:
        """Delete a tag and all of its item links."""
        with self._lock:
            try:
                with self._conn:
                    tag_id = self._tag_id(name)
                    if tag_id is None:
                        return False
                    self._conn.execute("DELETE FROM item_tags WHERE tag_id = ?", (tag_id,))
                    self._conn.execute("DELETE FROM tags WHERE id = ?", (tag_id,))
                return True
            except sqlite3.Error as e:
                logger.warning("Failed to remove tag '%s': %s", name, e)
                return False

    def rename_tag(self, old: str, new: str) -> None:
        """
        Rename a tag; items keep their links.

        Raises:
            TagNotFoundError: old does not exist
            TagExistsError: new already exists
            StoreError: the database rejected the change
        """
        with self._lock:
            try:
                with self._conn:
                    tag_id = self._tag_id(old)
                    if tag_id is None:
                        raise TagNotFoundError(old)
                    if self._tag_id(new) is not None:
                        raise TagExistsError(new)
                    self._conn.execute("UPDATE tags SET name = ? WHERE id = ?", (new, tag_id))
            except StoreError as e:
                logger.warning("Failed to rename tag: %s", e)
                raise
            except sqlite3.Error as e:
                logger.warning("Failed to rename tag '%s': %s", old, e)
                raise StoreError(f"Failed to rename tag '{old}': {e}") from e
        logger.info("Renamed tag '%s' to '%s'", old, new)

    def list_tags(self) -> list[str]:
        with self._lock:
            try:
                rows = self._conn.execute("SELECT name FROM tags ORDER BY id").fetchall()
                return [row["name"] for row in rows]
            except sqlite3.Error as e:
                logger.warning("Failed to fetch all tags: %s", e)
                return []

    # -------------------------------------------------------------------------
    # Embeddings (active provider unless one is given)
    # -------------------------------------------------------------------------

    def save_embedding(self, item_id: int, vector: list[float], provider: Optional[str] = None) -> None:
        """Store or replace an item's vector. Raises StoreError on failure."""
        emb = self.embeddings(provider)
        try:
            emb.save(item_id, vector)
        except sqlite3.Error as e:
            logger.warning("Failed to save embedding for item %d to %s: %s", item_id, emb.table, e)
            raise StoreError(f"Failed to save embedding for item {item_id}: {e}") from e
        logger.debug("Saved %d-dim embedding for item %d to %s", len(vector), item_id, emb.table)

    def get_embedding(self, item_id: int, provider: Optional[str] = None) -> Optional[list[float]]:
        try:
            return self.embeddings(provider).get(item_id)
        except sqlite3.Error as e:
            logger.warning("Failed to get embedding for item %d: %s", item_id, e)
            return None

    def clear_embeddings(self, provider: Optional[str] = None) -> int:
        """Delete every vector of one provider. Returns the number removed."""
        emb = self.embeddings(provider)
        try:
            removed = emb.clear()
        except sqlite3.Error as e:
            logger.warning("Failed to clear %s: %s", emb.table, e)
            return 0
        logger.info("Cleared %d embeddings from %s", removed, emb.table)
        return removed

    def embedding_counts(self) -> dict[str, int]:
        """Number of stored vectors per provider."""
        counts = {}
        for provider in PROVIDER_NAMES:
            try:
                counts[provider] = self.embeddings(provider).count()
            except sqlite3.Error as e:
                logger.warning("Failed to count %s embeddings: %s", provider, e)
                counts[provider] = 0
        return counts

    def items_missing_embedding(
        self, provider: Optional[str] = None, *, raise_errors: bool = False,
    ) -> list[ClipItem]:
        """
        Text items that have no vector in the provider's table, oldest first.

        Storage errors are logged and give an empty list, unless
        raise_errors is set, in which case they raise StoreError.
        """
        emb = self.embeddings(provider)
        with self._lock:
            try:
                emb.ensure_table()
                rows = self._conn.execute(f"""
                    SELECT * FROM items ci
                    WHERE ci.type = ? AND ci.text_content IS NOT NULL
                      AND NOT EXISTS (SELECT 1 FROM {emb.table} e WHERE e.id = ci.id)
                    ORDER BY ci.id ASC
                """, (ItemKind.TEXT.value,)).fetchall()
                return self._rows_to_items(rows)
            except sqlite3.Error as e:
                if raise_errors:
                    raise StoreError(f"Failed to fetch text items without embeddings: {e}") from e
                logger.warning("Failed to fetch text items without embeddings: %s", e)
                return []

    def rank_by_similarity(
        self, query: list[float], k: int = 30, provider: Optional[str] = None,
    ) -> list[tuple[int, float]]:
        """Top-k (item id, cosine similarity) descending. Raises StoreError."""
        emb = self.embeddings(provider)
        try:
            return emb.rank(query, k)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to rank embeddings in {emb.table}: {e}") from e

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

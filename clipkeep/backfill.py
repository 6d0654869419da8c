"""
Embedding backfill for text items captured without a vector.

The job snapshots the missing items once, then embeds them one at a time
with the active provider. Cancellation is cooperative and checked before
each item; a failure on one item is logged and the job moves on.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .embedding_client import EmbeddingClient
from .store import ItemStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class BackfillState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (BackfillState.COMPLETED, BackfillState.CANCELLED, BackfillState.FAILED)


@dataclass
class BackfillResult:
    """Outcome of a backfill run.

    processed counts every item attempted, saved or failed.
    """
    state: BackfillState
    processed: int = 0
    total: int = 0
    saved: int = 0
    failed: int = 0
    error: Optional[str] = None


class BackfillJob:
    """
    Generate embeddings for text items that lack one for the active provider.

    Run synchronously with run(), or on a background thread with start()
    and wait(). A job runs once.
    """

    def __init__(
        self,
        store: ItemStore,
        client: EmbeddingClient,
        *,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self._store = store
        self._client = client
        self._on_progress = on_progress
        self._cancel = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._result = BackfillResult(state=BackfillState.PENDING)

    @property
    def result(self) -> BackfillResult:
        return self._result

    @property
    def state(self) -> BackfillState:
        return self._result.state

    def cancel(self) -> None:
        """Request a stop at the next item boundary."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self) -> BackfillResult:
        result = self._result
        result.state = BackfillState.RUNNING
        try:
            items = self._store.items_missing_embedding(raise_errors=True)
        except Exception as e:
            logger.warning("Backfill could not list items: %s", e)
            result.state = BackfillState.FAILED
            result.error = str(e)
            return result

        result.total = len(items)
        logger.info("Backfill started: %d items without embeddings", result.total)

        for item in items:
            if self._cancel.is_set():
                result.state = BackfillState.CANCELLED
                logger.info("Backfill cancelled after %d of %d items",
                            result.processed, result.total)
                return result
            try:
                provider, vector = self._client.embed_with_provider(item.content)
                self._store.save_embedding(item.id, vector, provider=provider)
                result.saved += 1
            except Exception as e:
                result.failed += 1
                logger.warning("Backfill failed for item %d: %s", item.id, e)
            result.processed += 1
            self._report(result.processed, result.total)

        result.state = BackfillState.COMPLETED
        logger.info("Backfill completed: %d saved, %d failed", result.saved, result.failed)
        return result

    def _report(self, processed: int, total: int) -> None:
        if self._on_progress is None:
            return
        try:
            self._on_progress(processed, total)
        except Exception as e:
            logger.warning("Backfill progress callback failed: %s", e)

    def start(self) -> None:
        """Run on a background thread."""
        if self._thread is not None:
            raise RuntimeError("Backfill job already started")
        self._thread = threading.Thread(target=self.run, name="clipkeep-backfill", daemon=True)
        self._thread.start()

    def wait(self, timeout: Optional[float] = None) -> BackfillResult:
        if self._thread is not None:
            self._thread.join(timeout)
        return self._result

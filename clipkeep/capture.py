"""
Clipboard capture loop.

Polls the clipboard on a fixed interval. Each value that differs from the
last one seen becomes a new item, attributed to the foreground
application. Text items are then embedded in the background; an embedding
failure is logged and never undoes the insert.
"""

import logging
import subprocess
import sys
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, runtime_checkable

import pyperclip

from .config import DEFAULT_POLL_INTERVAL
from .embedding_client import EmbeddingClient
from .store import ItemStore
from .types import UNKNOWN_SOURCE, ClipItem, ItemKind

logger = logging.getLogger(__name__)


@runtime_checkable
class Clipboard(Protocol):
    """
    Access to the system clipboard.

    read_* return None when the clipboard holds nothing of that kind.
    """

    def read_text(self) -> Optional[str]: ...

    def read_image(self) -> Optional[bytes]: ...

    def write_text(self, text: str) -> None: ...

    def write_image(self, data: bytes) -> None: ...


class PyperclipClipboard:
    """System clipboard via pyperclip. Text only; images are not readable."""

    def read_text(self) -> Optional[str]:
        try:
            text = pyperclip.paste()
        except pyperclip.PyperclipException as e:
            logger.warning("Clipboard read failed: %s", e)
            return None
        return text or None

    def read_image(self) -> Optional[bytes]:
        return None

    def write_text(self, text: str) -> None:
        pyperclip.copy(text)

    def write_image(self, data: bytes) -> None:
        raise NotImplementedError("pyperclip cannot write images")


_FRONTMOST_SCRIPT = (
    'tell application "System Events" to get bundle identifier '
    "of first process whose frontmost is true"
)


def foreground_app() -> str:
    """Identifier of the frontmost application, or "Unknown"."""
    if sys.platform != "darwin":
        return UNKNOWN_SOURCE
    try:
        output = subprocess.check_output(
            ["osascript", "-e", _FRONTMOST_SCRIPT],
            stderr=subprocess.DEVNULL, timeout=2,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("Foreground app lookup failed: %s", e)
        return UNKNOWN_SOURCE
    return output.decode(errors="replace").strip() or UNKNOWN_SOURCE


@dataclass
class CaptureResult:
    """A captured item and, for text, the pending embedding task."""
    item: ClipItem
    embedding: Optional[Future] = None


class CaptureLoop:
    """
    Turns clipboard changes into stored items.

    Dedup is by exact equality with the previously captured value of the
    same kind only: copying the same thing twice captures once, copying
    A, B, A captures three items.

    Args:
        store: Item store
        client: Embedding client for text items
        clipboard: Clipboard capability
        interval: Seconds between ticks when run with start()
        executor: Where embeddings run (default: a private single-worker pool)
        app_lookup: Returns the foreground application identifier
        on_captured: Called with each stored item (e.g. to refresh a session)
    """

    def __init__(
        self,
        store: ItemStore,
        client: EmbeddingClient,
        clipboard: Clipboard,
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
        executor: Optional[Executor] = None,
        app_lookup: Callable[[], str] = foreground_app,
        on_captured: Optional[Callable[[ClipItem], None]] = None,
    ):
        self._store = store
        self._client = client
        self._clipboard = clipboard
        self.interval = interval
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="clipkeep-embed"
        )
        self._app_lookup = app_lookup
        self._on_captured = on_captured

        self._last_text: Optional[str] = None
        self._last_image: Optional[bytes] = None

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def tick(self) -> list[CaptureResult]:
        """Poll the clipboard once. Returns what was captured."""
        results = []

        text = self._clipboard.read_text()
        if text and text != self._last_text:
            result = self._capture(ItemKind.TEXT, content=text)
            if result is not None:
                results.append(result)
            self._last_text = text

        image = self._clipboard.read_image()
        if image and image != self._last_image:
            result = self._capture(ItemKind.IMAGE, image_data=image)
            if result is not None:
                results.append(result)
            self._last_image = image

        return results

    def _capture(self, kind: ItemKind, content: str = "", image_data: Optional[bytes] = None) -> Optional[CaptureResult]:
        try:
            source = self._app_lookup() or UNKNOWN_SOURCE
        except Exception as e:
            logger.debug("Foreground app lookup raised: %s", e)
            source = UNKNOWN_SOURCE

        item = ClipItem(kind=kind, content=content, image_data=image_data, source=source)
        item_id = self._store.insert_item(item)
        if not item_id:
            return None
        item = item.with_id(item_id)
        logger.info("Captured %s item %d from %s", kind.value, item_id, source)

        embedding = None
        if kind is ItemKind.TEXT:
            embedding = self._executor.submit(self._embed, item)
        if self._on_captured is not None:
            try:
                self._on_captured(item)
            except Exception as e:
                logger.warning("Capture callback failed for item %d: %s", item_id, e)
        return CaptureResult(item=item, embedding=embedding)

    def _embed(self, item: ClipItem) -> bool:
        """Embed and save one text item. Failures are logged, never raised."""
        try:
            provider, vector = self._client.embed_with_provider(item.content)
            self._store.save_embedding(item.id, vector, provider=provider)
        except Exception as e:
            logger.warning("Failed to generate or save embedding for item %d: %s", item.id, e)
            return False
        logger.debug("Embedded item %d (%d dimensions)", item.id, len(vector))
        return True

    # -------------------------------------------------------------------------
    # Background polling
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Poll on a daemon thread until stop()."""
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="clipkeep-capture", daemon=True
        )
        self._thread.start()

    def _run(self) -> None:
        logger.info("Clipboard capture started (every %.1fs)", self.interval)
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.warning("Clipboard poll failed: %s", e)
            self._stop.wait(self.interval)
        logger.info("Clipboard capture stopped")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop polling and wait for pending embeddings."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        if self._owns_executor:
            self._executor.shutdown(wait=True)

"""
Shared pytest fixtures for clipkeep tests.

Provides deterministic mock embedding providers and an in-memory
clipboard so no test touches the network or the system clipboard.
"""

import hashlib
from typing import Optional

import pytest

from clipkeep.config import SettingsManager
from clipkeep.embedding_client import EmbeddingClient
from clipkeep.errors import NetworkError
from clipkeep.providers.base import ProviderRegistry
from clipkeep.search import SearchEngine
from clipkeep.store import ItemStore
from clipkeep.types import ClipItem, ItemKind


class MockEmbeddingProvider:
    """
    Deterministic mock embedding provider.

    Vectors come from a hash of the text unless one is pinned in
    `vectors`. Texts listed in `fail_on` raise NetworkError.
    """

    dimension = 8

    def __init__(self, name: str = "Mock"):
        self.name = name
        self.embed_calls: list[str] = []
        self.vectors: dict[str, list[float]] = {}
        self.fail_on: set[str] = set()

    def embed(self, text: str) -> list[float]:
        self.embed_calls.append(text)
        if text in self.fail_on:
            raise NetworkError(f"mock failure for {text!r}")
        if text in self.vectors:
            return list(self.vectors[text])
        h = hashlib.md5(text.encode()).hexdigest()
        return [int(h[i:i + 2], 16) / 255.0 for i in range(0, self.dimension * 2, 2)]


class FakeClipboard:
    """In-memory clipboard."""

    def __init__(self, text: Optional[str] = None, image: Optional[bytes] = None):
        self.text = text
        self.image = image
        self.written_text: list[str] = []
        self.written_images: list[bytes] = []

    def read_text(self) -> Optional[str]:
        return self.text

    def read_image(self) -> Optional[bytes]:
        return self.image

    def write_text(self, text: str) -> None:
        self.written_text.append(text)
        self.text = text

    def write_image(self, data: bytes) -> None:
        self.written_images.append(data)
        self.image = data


@pytest.fixture
def mock_providers():
    """One mock provider per provider id."""
    return {
        "local": MockEmbeddingProvider("Local"),
        "google": MockEmbeddingProvider("Google"),
        "openai": MockEmbeddingProvider("OpenAI"),
    }


@pytest.fixture
def registry(mock_providers):
    """Registry that hands out the mock providers regardless of params."""
    reg = ProviderRegistry()
    reg._lazy_loaded = True
    for provider_id, provider in mock_providers.items():
        reg.register_embedding(provider_id, lambda p=provider, **params: p)
    return reg


@pytest.fixture
def settings():
    """Settings manager that doesn't write to disk."""
    return SettingsManager(persist=False)


@pytest.fixture
def client(settings, registry):
    return EmbeddingClient(settings, registry=registry, reachability=lambda url: True)


@pytest.fixture
def store(tmp_path, settings):
    s = ItemStore(tmp_path / "clipkeep.db", settings=settings)
    yield s
    s.close()


@pytest.fixture
def engine(store, client):
    return SearchEngine(store, client)


@pytest.fixture
def clipboard():
    return FakeClipboard()


def make_item(
    content: str = "",
    *,
    kind: ItemKind = ItemKind.TEXT,
    timestamp: str = "2025-01-01T00:00:00.000000",
    tags=(),
    image_data: Optional[bytes] = None,
    source: str = "com.example.app",
) -> ClipItem:
    return ClipItem(
        kind=kind, content=content, image_data=image_data,
        timestamp=timestamp, source=source, tags=frozenset(tags),
    )


def ts(n: int) -> str:
    """Distinct, ordered timestamps: ts(1) < ts(2) < ..."""
    return f"2025-01-01T00:00:{n // 1_000_000:02d}.{n % 1_000_000:06d}"

"""
Embedding client: one entry point over whichever provider is active.

Settings are read on every call, so a provider switch or a new API key
applies to the next request. Existing vectors are never re-embedded.
"""

import logging
from typing import Callable, Optional

from .config import EmbeddingSettings, SettingsManager
from .errors import EmbeddingError, InvalidInputError, NetworkError
from .providers import ProviderRegistry, get_registry
from .providers.embeddings import GOOGLE_API_BASE, OPENAI_EMBEDDINGS_URL, normalize_base_url
from .providers.network import url_reachable

logger = logging.getLogger(__name__)

CONNECTION_TEST_TEXT = "Test connection"


def provider_endpoint(settings: EmbeddingSettings) -> str:
    """
    URL the active provider will talk to (used for the reachability check).

    Raises:
        InvalidURLError: If the local base URL is malformed
    """
    if settings.provider == "local":
        return normalize_base_url(settings.local_base_url)
    if settings.provider == "google":
        return GOOGLE_API_BASE
    return OPENAI_EMBEDDINGS_URL


class EmbeddingClient:
    """
    Turns text into a vector using the active embedding provider.

    Args:
        settings: Process-wide settings manager
        registry: Provider registry (default: global registry)
        reachability: Callable taking a URL and returning whether the
            network path to it is available. Checked before every request.
    """

    def __init__(
        self,
        settings: SettingsManager,
        *,
        registry: Optional[ProviderRegistry] = None,
        reachability: Optional[Callable[[str], bool]] = None,
    ):
        self._settings = settings
        self._registry = registry or get_registry()
        self._reachable = reachability or url_reachable

    @property
    def provider(self) -> str:
        """Active provider id."""
        return self._settings.provider

    def embed_with_provider(self, text: str) -> tuple[str, list[float]]:
        """Embed text and report which provider produced the vector.

        Callers that persist the vector use the returned provider id, so a
        settings change mid-request cannot file the vector under the wrong
        provider's table.
        """
        settings = self._settings.current
        if not self._reachable(provider_endpoint(settings)):
            raise NetworkError("No network connection available")
        if not text:
            raise InvalidInputError("Empty text provided")

        provider = self._registry.create_embedding(
            settings.provider, settings.provider_params()
        )
        logger.debug("Embedding %d chars with %s", len(text), provider.name)
        try:
            vector = provider.embed(text)
        except EmbeddingError:
            raise
        except Exception as e:
            raise NetworkError(str(e)) from e
        return settings.provider, vector

    def generate(self, text: str) -> list[float]:
        """Embed text with the active provider.

        Raises:
            EmbeddingError: see clipkeep.errors for the taxonomy
        """
        return self.embed_with_provider(text)[1]

    def test_connection(self) -> int:
        """Embed a fixed probe text; return the vector dimension."""
        vector = self.generate(CONNECTION_TEST_TEXT)
        logger.info("Connection test succeeded: %s, %d dimensions",
                    self._settings.current.provider_display_name, len(vector))
        return len(vector)

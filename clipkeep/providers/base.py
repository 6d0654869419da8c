"""
Base provider protocols.

These define the interfaces that concrete providers must implement.
Using Protocol for structural subtyping - no explicit inheritance required.
"""

from typing import Protocol, runtime_checkable


# -----------------------------------------------------------------------------
# Embedding Generation
# -----------------------------------------------------------------------------

@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Generates vector embeddings from text.

    Each provider's vectors live in their own table, so a provider only
    ever has to be consistent with itself.

    Example implementation:
        class StaticEmbedding:
            name = "Static"

            def embed(self, text: str) -> list[float]:
                return [float(len(text)), 1.0]
    """

    name: str

    def embed(self, text: str) -> list[float]:
        """
        Generate an embedding vector for the given text.

        Args:
            text: The text to embed (non-empty)

        Returns:
            A list of floats representing the embedding vector

        Raises:
            EmbeddingError: One of the taxonomy errors in clipkeep.errors
        """
        ...


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating embedding providers.

    Providers are registered by id and instantiated from settings, so the
    store configuration (TOML) names a provider rather than a class.

    Example:
        registry = ProviderRegistry()
        registry.register_embedding("local", LocalEmbedding)

        # Later, from settings:
        provider = registry.create_embedding("local", {"base_url": "localhost:8080"})
    """

    def __init__(self):
        self._embedding_providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily load provider modules."""
        if self._lazy_loaded:
            return
        self._lazy_loaded = True
        # Import triggers registration; it does not instantiate anything
        from . import embeddings  # noqa: F401

    def register_embedding(self, name: str, provider_class: type) -> None:
        """Register an embedding provider class."""
        self._embedding_providers[name] = provider_class

    def create_embedding(self, name: str, params: dict | None = None) -> EmbeddingProvider:
        """Create an embedding provider instance."""
        self._ensure_providers_loaded()
        if name not in self._embedding_providers:
            available = ", ".join(self._embedding_providers.keys()) or "none"
            raise ValueError(
                f"Unknown embedding provider: '{name}'. "
                f"Available providers: {available}."
            )
        return self._embedding_providers[name](**(params or {}))

    def list_embedding_providers(self) -> list[str]:
        """List registered embedding provider ids."""
        self._ensure_providers_loaded()
        return list(self._embedding_providers.keys())


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry

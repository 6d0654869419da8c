"""
Embedding providers.

Concrete providers are auto-registered when this package is imported.
"""

from .base import (
    EmbeddingProvider,
    ProviderRegistry,
    get_registry,
)

# Import concrete providers to trigger registration
from . import embeddings

__all__ = [
    "EmbeddingProvider",
    "ProviderRegistry",
    "get_registry",
]

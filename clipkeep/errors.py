"""
Error types and error logging for clipkeep.

The embedding errors originate in the provider client and travel unchanged
through capture, backfill and search, where they become user-visible state.
Their string form is the message shown to the user.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


# -----------------------------------------------------------------------------
# Embedding errors
# -----------------------------------------------------------------------------

class EmbeddingError(Exception):
    """Base class for failures while generating an embedding."""


class InvalidAPIKeyError(EmbeddingError):
    def __init__(self):
        super().__init__("Invalid API key. Please check your settings and try again.")


class InvalidURLError(EmbeddingError):
    def __init__(self):
        super().__init__("Invalid URL. Please check the server address in settings.")


class InvalidInputError(EmbeddingError):
    def __init__(self, message: str):
        self.message = message
        super().__init__(f"Invalid input: {message}")


class NetworkError(EmbeddingError):
    def __init__(self, message: str):
        self.message = message
        super().__init__(f"Network error: {message}")


class DecodingError(EmbeddingError):
    def __init__(self, message: str):
        self.message = message
        super().__init__(f"Failed to decode response: {message}")


class EmbeddingTimeoutError(EmbeddingError):
    def __init__(self):
        super().__init__(
            "Request timed out. Please check your connection and try again."
        )


class ServerError(EmbeddingError):
    def __init__(self, code: int):
        self.code = code
        super().__init__(f"Server error (code: {code}). Please try again later.")


class RefusedConnectionError(EmbeddingError):
    """The local embedding service could not be reached."""

    def __init__(self):
        super().__init__(
            "Could not connect to the embedding service. Please check if the "
            "service is running and properly configured."
        )


class ServiceUnavailableError(EmbeddingError):
    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(
            f"The {provider} embedding service is currently unavailable. "
            "Please check your settings and try again."
        )


# -----------------------------------------------------------------------------
# Store errors
# -----------------------------------------------------------------------------

class StoreError(Exception):
    """A storage operation that callers must react to has failed."""


class TagExistsError(StoreError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Tag '{name}' already exists.")


class TagNotFoundError(StoreError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Tag '{name}' not found.")


# -----------------------------------------------------------------------------
# Error log
# -----------------------------------------------------------------------------

def _error_log_path() -> Path:
    """Resolve error log path, respecting CLIPKEEP_STORE_PATH."""
    store = os.environ.get("CLIPKEEP_STORE_PATH")
    if store:
        return Path(store) / "clipkeep-errors.log"
    return Path.home() / ".clipkeep" / "clipkeep-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
